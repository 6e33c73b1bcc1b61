"""Orchestrator — the evaluation pipeline: predict → profile → rules → execute.

Also handles the inbound side of interventions: client replies to a
confirmation request and appointment lifecycle events that move the
standing risk profile.
"""

from __future__ import annotations

import logging
import re
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from noshow.domain import (
    AppointmentStatus,
    ChannelType,
    Clock,
    LoyaltySnapshot,
    Notification,
    utc_now,
)
from noshow.errors import AppointmentNotFoundError, InterventionNotFoundError
from noshow.interventions.dispatcher import ActionStatus
from noshow.logging import evaluation_context, get_logger
from noshow.scoring.weights import ScoreEvent

if TYPE_CHECKING:
    from noshow.domain import AppointmentContext
    from noshow.interventions.engine import (
        EffectivenessStats,
        ExecutedIntervention,
        InterventionEngine,
    )
    from noshow.interventions.rules import InterventionRule
    from noshow.scoring.predictor import NoShowPredictor, Prediction
    from noshow.scoring.risk_profile import RiskProfile, RiskScoringSystem, ScoreChange
    from noshow.scoring.segments import Segment
    from noshow.settings import Settings
    from noshow.storage.record_store import RecordStoreProtocol

__all__ = ["EvaluationResult", "Orchestrator", "ReplyIntent", "ReplyOutcome", "classify_reply"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    appointment_id: str
    prediction: Prediction
    profile: RiskProfile
    segment: Segment
    rules: list[InterventionRule]
    interventions: list[ExecutedIntervention] = field(default_factory=list)


class ReplyIntent(StrEnum):
    CONFIRM = "CONFIRM"
    CANCEL = "CANCEL"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ReplyOutcome:
    intent: ReplyIntent
    client_id: str | None = None
    appointment_id: str | None = None
    status: AppointmentStatus | None = None

    @property
    def handled(self) -> bool:
        return self.status is not None


_CONFIRM_WORDS = frozenset({"yes", "y", "ok", "confirm", "confirmed", "sim", "confirmo"})
_CANCEL_WORDS = frozenset({"no", "n", "cancel", "cancelled", "nao", "cancelo", "cancelar"})


def classify_reply(body: str) -> ReplyIntent:
    """Keyword match on whole words; a reply with both kinds is UNKNOWN."""
    folded = unicodedata.normalize("NFKD", body.lower())
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    words = set(re.findall(r"[a-z]+", folded))
    confirm = bool(words & _CONFIRM_WORDS)
    cancel = bool(words & _CANCEL_WORDS)
    if confirm and not cancel:
        return ReplyIntent.CONFIRM
    if cancel and not confirm:
        return ReplyIntent.CANCEL
    return ReplyIntent.UNKNOWN


_LIFECYCLE_STATUS: dict[ScoreEvent, AppointmentStatus] = {
    ScoreEvent.APPOINTMENT_COMPLETED: AppointmentStatus.COMPLETED,
    ScoreEvent.NO_SHOW: AppointmentStatus.NO_SHOW,
    ScoreEvent.CANCELLATION: AppointmentStatus.CANCELLED,
}

# Effectiveness attached to earlier interventions once the outcome is known
_OUTCOME_EFFECTIVENESS: dict[ScoreEvent, float] = {
    ScoreEvent.APPOINTMENT_COMPLETED: 1.0,
    ScoreEvent.NO_SHOW: 0.0,
}


class Orchestrator:
    """Coordinates scoring, rule selection, execution and persistence."""

    def __init__(
        self,
        settings: Settings,
        record_store: RecordStoreProtocol,
        predictor: NoShowPredictor,
        scoring: RiskScoringSystem,
        engine: InterventionEngine,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._store = record_store
        self._predictor = predictor
        self._scoring = scoring
        self._engine = engine
        self._clock = clock

    @property
    def engine(self) -> InterventionEngine:
        return self._engine

    @property
    def scoring(self) -> RiskScoringSystem:
        return self._scoring

    def _load(self, appointment_id: str) -> AppointmentContext:
        ctx = self._store.load_appointment_context(appointment_id)
        if ctx is None:
            msg = f"appointment {appointment_id} not found"
            raise AppointmentNotFoundError(msg)
        return ctx

    async def evaluate_appointment(
        self,
        appointment_id: str,
        execute: bool = False,
        external_factors: dict[str, Any] | None = None,
    ) -> EvaluationResult:
        """Score one appointment and optionally run every eligible rule.

        Steps:
        1. Load snapshots from the record store
        2. Predict the appointment's no-show risk
        3. Recompute the client's standing profile and segment
        4. Select eligible rules (cooldown + trigger conditions)
        5. If *execute*, run each rule in priority order and persist it

        Raises:
            AppointmentNotFoundError: unknown *appointment_id*.
            RecordStoreError: the store failed; nothing further is attempted.
        """
        with evaluation_context(appointment_id):
            return await self._evaluate(appointment_id, execute, external_factors)

    async def _evaluate(
        self,
        appointment_id: str,
        execute: bool,
        external_factors: dict[str, Any] | None,
    ) -> EvaluationResult:
        log = get_logger()

        # 1 ── Snapshots ────────────────────────────────────────────
        ctx = self._load(appointment_id)

        # 2 ── Prediction ───────────────────────────────────────────
        prediction = self._predictor.predict(ctx.appointment, ctx.history, external_factors)
        log.info(
            "appointment_scored",
            risk_score=prediction.risk_score,
            risk_level=str(prediction.risk_level),
            confidence=prediction.confidence,
        )

        # 3 ── Standing profile ─────────────────────────────────────
        loyalty = LoyaltySnapshot(points=ctx.client.loyalty_points or ctx.history.loyalty_points)
        profile = self._scoring.score_client(
            ctx.client.id, ctx.past_appointments, loyalty, ctx.engagement
        )
        segment = self._scoring.segment(profile)

        # 4 ── Rule selection ───────────────────────────────────────
        rules = self._engine.evaluate(ctx.appointment, prediction, profile)
        log.info(
            "rules_selected",
            rules=[r.id for r in rules],
            segment=segment.name,
            profile_score=profile.current_score,
        )

        # 5 ── Execution ────────────────────────────────────────────
        interventions: list[ExecutedIntervention] = []
        if execute:
            for rule in rules:
                with structlog.contextvars.bound_contextvars(rule_id=rule.id):
                    record = await self._engine.execute(
                        rule, ctx.appointment, ctx.client, ctx.professional
                    )
                    self._store.save_intervention_history(record)
                    if _requested_confirmation(record):
                        self._store.update_appointment_status(
                            appointment_id, AppointmentStatus.CONFIRMATION_PENDING
                        )
                    log.info(
                        "intervention_executed",
                        intervention_id=record.id,
                        result=str(record.result),
                        failed_actions=[i for i, _ in record.failed_actions],
                    )
                interventions.append(record)

        return EvaluationResult(
            appointment_id=appointment_id,
            prediction=prediction,
            profile=profile,
            segment=segment,
            rules=rules,
            interventions=interventions,
        )

    async def retry_action(self, intervention_id: str, action_index: int) -> ExecutedIntervention:
        """Re-run one action of a stored intervention and persist the new outcome."""
        record = self._store.get_intervention(intervention_id)
        if record is None:
            msg = f"intervention {intervention_id} not found"
            raise InterventionNotFoundError(msg)
        rule = self._engine.get_rule(record.rule_id)
        if rule is None or not 0 <= action_index < min(len(rule.actions), len(record.actions)):
            msg = f"intervention {intervention_id} has no action {action_index}"
            raise InterventionNotFoundError(msg)

        ctx = self._load(record.appointment_id)
        outcome = await self._engine.execute_action(
            rule.actions[action_index], ctx.appointment, ctx.client, ctx.professional
        )
        updated = record.with_action(action_index, outcome)
        self._store.save_intervention_history(updated)
        logger.info(
            "Retried action %d of %s: %s -> %s",
            action_index,
            intervention_id,
            outcome.status,
            updated.result,
        )
        return updated

    def handle_client_reply(self, phone: str, body: str) -> ReplyOutcome:
        """Apply a client's confirm/cancel reply to their next appointment."""
        intent = classify_reply(body)
        client = self._store.find_client(phone)
        if client is None:
            logger.info("Reply from unknown number %s***", phone[:6])
            return ReplyOutcome(intent=intent)
        if intent == ReplyIntent.UNKNOWN:
            logger.info("Unrecognised reply from client %s", client.id)
            return ReplyOutcome(intent=intent, client_id=client.id)

        now = self._clock()
        upcoming = self._store.find_upcoming_appointments(
            client.id, now, now + timedelta(hours=self._settings.upcoming_window_hours)
        )
        if not upcoming:
            logger.info("Client %s replied but has no upcoming appointment", client.id)
            return ReplyOutcome(intent=intent, client_id=client.id)

        appointment = upcoming[0]
        if intent == ReplyIntent.CONFIRM:
            status, event, verb = AppointmentStatus.CONFIRMED, ScoreEvent.ENGAGEMENT, "confirmed"
        else:
            status, event, verb = (
                AppointmentStatus.CANCELLED,
                ScoreEvent.CANCELLATION,
                "cancelled",
            )

        self._store.update_appointment_status(appointment.id, status)
        self._scoring.update_score_after_event(
            client.id, event, {"appointment_id": appointment.id, "via": "reply"}
        )
        self._store.create_notification(
            Notification(
                id=str(uuid.uuid4()),
                client_id=client.id,
                appointment_id=appointment.id,
                kind=f"APPOINTMENT_{status}",
                title=f"Appointment {verb} by reply",
                message=f"{client.name} {verb} the {appointment.service_name or 'appointment'}"
                f" on {appointment.scheduled_for.strftime(self._settings.date_format)}",
                created_at=now,
            )
        )
        logger.info("Client %s %s appointment %s", client.id, verb, appointment.id)
        return ReplyOutcome(
            intent=intent, client_id=client.id, appointment_id=appointment.id, status=status
        )

    def record_lifecycle_event(
        self,
        appointment_id: str,
        event: ScoreEvent | str,
        context: dict[str, Any] | None = None,
    ) -> ScoreChange:
        """Apply an appointment outcome to the store and the client's profile.

        Completion and no-show also settle the effectiveness of earlier
        interventions for the appointment.
        """
        kind = ScoreEvent(event)
        ctx = self._load(appointment_id)

        status = _LIFECYCLE_STATUS.get(kind)
        if status is not None:
            self._store.update_appointment_status(appointment_id, status)

        effectiveness = _OUTCOME_EFFECTIVENESS.get(kind)
        if effectiveness is not None:
            for record in self._store.list_interventions(appointment_id=appointment_id):
                if record.effectiveness is None:
                    self._store.save_intervention_history(
                        self._engine.annotate_effectiveness(record, effectiveness)
                    )

        return self._scoring.update_score_after_event(
            ctx.client.id, kind, {"appointment_id": appointment_id, **(context or {})}
        )

    def effectiveness_stats(self, appointment_id: str | None = None) -> EffectivenessStats:
        return self._engine.effectiveness_stats(
            self._store.list_interventions(appointment_id=appointment_id, limit=10_000)
        )


def _requested_confirmation(record: ExecutedIntervention) -> bool:
    return any(
        a.channel == ChannelType.CONFIRMATION_REQUIRED and a.status != ActionStatus.FAILED
        for a in record.actions
    )
