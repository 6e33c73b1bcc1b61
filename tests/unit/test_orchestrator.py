"""Tests for the evaluation pipeline, client replies and lifecycle events."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from noshow.adapters.noop import NoopChannelSender
from noshow.domain import (
    AppointmentContext,
    AppointmentStatus,
    ChannelType,
    PastAppointment,
    RiskLevel,
)
from noshow.errors import (
    AppointmentNotFoundError,
    InterventionNotFoundError,
    RecordStoreError,
)
from noshow.interventions.dispatcher import ActionDispatcher, ActionStatus, SendReport
from noshow.interventions.engine import InterventionEngine, InterventionResult
from noshow.interventions.rules import RuleSet
from noshow.interventions.templates import TemplateRenderer
from noshow.orchestration.orchestrator import Orchestrator, ReplyIntent, classify_reply
from noshow.scoring.predictor import Prediction
from noshow.scoring.risk_profile import RiskScoringSystem
from noshow.scoring.weights import ScoreEvent
from noshow.settings import Settings
from noshow.storage.record_store import InMemoryRecordStore

from fakes import NOW, FakeClock


class _FlakySender:
    """Fails the first *failures* sends, then accepts."""

    timeout_seconds = 5.0

    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls = 0

    async def send(
        self, channel: ChannelType, recipient: str, message: str, parameters: dict[str, Any]
    ) -> SendReport:
        self.calls += 1
        if self.calls <= self.failures:
            return SendReport(status=ActionStatus.FAILED, error="temporarily unavailable")
        return SendReport(status=ActionStatus.SENT, provider_message_id=f"ok-{self.calls}")


def _prediction(level: RiskLevel = RiskLevel.CRITICAL, score: int = 95) -> Prediction:
    return Prediction(
        appointment_id="APT-100",
        client_id="CLI-001",
        risk_score=score,
        risk_level=level,
        confidence=0.8,
        primary_factors=["History of 100% no-shows"],
        secondary_factors=[],
        recommendations=[],
        created_at=NOW,
    )


def _no_show_record() -> tuple[PastAppointment, ...]:
    return tuple(
        PastAppointment(NOW - timedelta(days=d), AppointmentStatus.NO_SHOW, 50.0)
        for d in (10, 20, 30, 40)
    )


class _OrchestratorCase:
    @pytest.fixture(autouse=True)
    def _setup(
        self,
        clock: FakeClock,
        test_settings: Settings,
        make_context: Callable[..., AppointmentContext],
    ) -> None:
        self.clock = clock
        self.settings = test_settings
        self.make_context = make_context
        self.store = InMemoryRecordStore()
        self.noop = NoopChannelSender(clock=clock)
        self.senders: dict[ChannelType, Any] = {c: self.noop for c in ChannelType}
        self.predictor = MagicMock()
        self.predictor.predict.return_value = _prediction()

    def _seed(self, hours_ahead: float = 30, **overrides: Any) -> AppointmentContext:
        ctx = self.make_context(hours_ahead, **overrides)
        ctx = AppointmentContext(
            appointment=ctx.appointment,
            history=ctx.history,
            client=ctx.client,
            professional=ctx.professional,
            past_appointments=_no_show_record(),
        )
        self.store.add_context(ctx)
        return ctx

    def _orchestrator(self) -> Orchestrator:
        engine = InterventionEngine(
            rules=RuleSet(),
            renderer=TemplateRenderer(),
            dispatcher=ActionDispatcher(self.senders, clock=self.clock),
            record_store=self.store,
            clock=self.clock,
        )
        return Orchestrator(
            settings=self.settings,
            record_store=self.store,
            predictor=self.predictor,
            scoring=RiskScoringSystem(clock=self.clock),
            engine=engine,
            clock=self.clock,
        )


# ── Evaluation ──────────────────────────────────────────────


class TestEvaluateAppointment(_OrchestratorCase):
    @pytest.mark.anyio
    async def test_select_only(self) -> None:
        ctx = self._seed()
        orch = self._orchestrator()

        result = await orch.evaluate_appointment("APT-100", external_factors={"weather_risk": 1.0})

        self.predictor.predict.assert_called_once_with(
            ctx.appointment, ctx.history, {"weather_risk": 1.0}
        )
        assert result.prediction.risk_level == RiskLevel.CRITICAL
        assert result.profile.current_score == 38
        assert result.segment.name == "Promising"
        assert [r.id for r in result.rules] == ["critical_confirmation", "noshow_history"]
        assert result.interventions == []
        assert self.store.list_interventions() == []
        assert self.noop.sent == []

    @pytest.mark.anyio
    async def test_execute_persists_and_requests_confirmation(self) -> None:
        self._seed()
        orch = self._orchestrator()

        result = await orch.evaluate_appointment("APT-100", execute=True)

        assert [i.rule_id for i in result.interventions] == [
            "critical_confirmation",
            "noshow_history",
        ]
        assert all(i.result == InterventionResult.SUCCESS for i in result.interventions)
        assert len(self.store.list_interventions("APT-100")) == 2
        assert len(self.noop.sent) == 5
        assert self.store.appointment_status("APT-100") == AppointmentStatus.CONFIRMATION_PENDING

    @pytest.mark.anyio
    async def test_second_run_respects_cooldown(self) -> None:
        self._seed()
        orch = self._orchestrator()
        await orch.evaluate_appointment("APT-100", execute=True)

        self.clock.advance(hours=1)
        again = await orch.evaluate_appointment("APT-100", execute=True)

        assert again.rules == []
        assert len(self.store.list_interventions()) == 2

    @pytest.mark.anyio
    async def test_failed_confirmation_keeps_status(self) -> None:
        self.senders[ChannelType.CONFIRMATION_REQUIRED] = _FlakySender(failures=99)
        self._seed()

        result = await self._orchestrator().evaluate_appointment("APT-100", execute=True)

        noshow = result.interventions[1]
        assert noshow.result == InterventionResult.PARTIAL
        assert self.store.appointment_status("APT-100") == AppointmentStatus.SCHEDULED

    @pytest.mark.anyio
    async def test_unknown_appointment(self) -> None:
        with pytest.raises(AppointmentNotFoundError):
            await self._orchestrator().evaluate_appointment("APT-404")

    @pytest.mark.anyio
    async def test_store_failure_propagates(self) -> None:
        self._seed()
        orch = self._orchestrator()
        with (
            patch.object(
                self.store,
                "save_intervention_history",
                side_effect=RecordStoreError("save_intervention_history"),
            ),
            pytest.raises(RecordStoreError),
        ):
            await orch.evaluate_appointment("APT-100", execute=True)


class TestRetryAction(_OrchestratorCase):
    @pytest.mark.anyio
    async def test_retry_replaces_failed_outcome(self) -> None:
        flaky = _FlakySender(failures=1)
        self.senders[ChannelType.WHATSAPP] = flaky
        self._seed()
        orch = self._orchestrator()
        result = await orch.evaluate_appointment("APT-100", execute=True)
        record = result.interventions[0]
        assert record.result == InterventionResult.PARTIAL
        assert [i for i, _ in record.failed_actions] == [0]

        updated = await orch.retry_action(record.id, 0)

        assert updated.result == InterventionResult.SUCCESS
        assert updated.actions[0].provider_message_id == "ok-2"
        assert self.store.get_intervention(record.id) == updated

    @pytest.mark.anyio
    async def test_unknown_intervention(self) -> None:
        with pytest.raises(InterventionNotFoundError):
            await self._orchestrator().retry_action("nope", 0)

    @pytest.mark.anyio
    async def test_action_index_out_of_range(self) -> None:
        self._seed()
        orch = self._orchestrator()
        result = await orch.evaluate_appointment("APT-100", execute=True)
        with pytest.raises(InterventionNotFoundError):
            await orch.retry_action(result.interventions[0].id, 7)


# ── Client replies ──────────────────────────────────────────


@pytest.mark.parametrize(
    ("body", "intent"),
    [
        ("SIM", ReplyIntent.CONFIRM),
        ("Yes, confirmed!", ReplyIntent.CONFIRM),
        ("Confirmo sim", ReplyIntent.CONFIRM),
        ("Não", ReplyIntent.CANCEL),
        ("please cancel", ReplyIntent.CANCEL),
        ("ok but cancel", ReplyIntent.UNKNOWN),
        ("what time again?", ReplyIntent.UNKNOWN),
        ("", ReplyIntent.UNKNOWN),
        ("snow", ReplyIntent.UNKNOWN),
    ],
)
def test_classify_reply(body: str, intent: ReplyIntent) -> None:
    assert classify_reply(body) == intent


class TestHandleClientReply(_OrchestratorCase):
    def test_confirm(self) -> None:
        self._seed()
        orch = self._orchestrator()

        outcome = orch.handle_client_reply("+55 11 98888-7777", "Sim, confirmo")

        assert outcome.handled
        assert outcome.status == AppointmentStatus.CONFIRMED
        assert outcome.appointment_id == "APT-100"
        assert self.store.appointment_status("APT-100") == AppointmentStatus.CONFIRMED
        note = self.store.notifications[0]
        assert note.kind == "APPOINTMENT_CONFIRMED"
        assert note.message == "Maria Silva confirmed the Cut + Blow-dry on 11/03/2026"
        # unknown profile starts at 50, engagement moves it by -2
        assert orch.scoring.get_profile("CLI-001").current_score == 48  # type: ignore[union-attr]

    def test_cancel(self) -> None:
        self._seed()
        orch = self._orchestrator()

        outcome = orch.handle_client_reply("+5511988887777", "Não posso, cancelar")

        assert outcome.intent == ReplyIntent.CANCEL
        assert self.store.appointment_status("APT-100") == AppointmentStatus.CANCELLED
        assert orch.scoring.get_profile("CLI-001").current_score == 58  # type: ignore[union-attr]

    def test_unknown_number(self) -> None:
        self._seed()
        outcome = self._orchestrator().handle_client_reply("+4400000000", "yes")
        assert not outcome.handled
        assert outcome.client_id is None

    def test_unrecognised_text(self) -> None:
        self._seed()
        outcome = self._orchestrator().handle_client_reply("+5511988887777", "running late")
        assert outcome.intent == ReplyIntent.UNKNOWN
        assert outcome.client_id == "CLI-001"
        assert self.store.appointment_status("APT-100") == AppointmentStatus.SCHEDULED

    def test_nothing_upcoming(self) -> None:
        self._seed(hours_ahead=100)
        outcome = self._orchestrator().handle_client_reply("+5511988887777", "yes")
        assert not outcome.handled
        assert self.store.notifications == []


# ── Lifecycle events ────────────────────────────────────────


class TestLifecycleEvents(_OrchestratorCase):
    @pytest.mark.anyio
    async def test_completion_settles_effectiveness(self) -> None:
        self._seed()
        orch = self._orchestrator()
        await orch.evaluate_appointment("APT-100", execute=True)

        change = orch.record_lifecycle_event("APT-100", ScoreEvent.APPOINTMENT_COMPLETED)

        assert (change.old_score, change.new_score) == (38, 33)
        assert self.store.appointment_status("APT-100") == AppointmentStatus.COMPLETED
        assert {r.effectiveness for r in self.store.list_interventions("APT-100")} == {1.0}
        stats = orch.effectiveness_stats("APT-100")
        assert stats.total_interventions == 2
        assert stats.average_effectiveness == 1.0

    @pytest.mark.anyio
    async def test_no_show_scores_zero(self) -> None:
        self._seed()
        orch = self._orchestrator()
        await orch.evaluate_appointment("APT-100", execute=True)

        change = orch.record_lifecycle_event("APT-100", "NO_SHOW")

        assert change.change == 15
        assert self.store.appointment_status("APT-100") == AppointmentStatus.NO_SHOW
        assert {r.effectiveness for r in self.store.list_interventions()} == {0.0}

    def test_payment_leaves_status_alone(self) -> None:
        self._seed()
        orch = self._orchestrator()

        change = orch.record_lifecycle_event("APT-100", ScoreEvent.PAYMENT)

        assert change.change == -3
        assert self.store.appointment_status("APT-100") == AppointmentStatus.SCHEDULED

    def test_unknown_appointment(self) -> None:
        with pytest.raises(AppointmentNotFoundError):
            self._orchestrator().record_lifecycle_event("APT-404", ScoreEvent.NO_SHOW)
