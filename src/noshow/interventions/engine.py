"""Intervention engine — rule evaluation and plan execution.

``evaluate`` decides which rules fire for an appointment (cooldown first,
then the trigger conjunction, then a stable sort by priority). ``execute``
runs one rule's actions in declared order and always returns an
``ExecutedIntervention``; a failing action is recorded and the rest still
run. Persisting the record is the caller's job.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from noshow.domain import AppointmentSnapshot, Client, Clock, Professional, as_utc, utc_now
from noshow.interventions.dispatcher import (
    ActionDispatcher,
    ActionOutcome,
    ActionStatus,
    payment_amount,
)
from noshow.interventions.rules import (
    InterventionAction,
    InterventionRule,
    RuleSet,
    TriggerContext,
)
from noshow.interventions.templates import TemplateRenderer

if TYPE_CHECKING:
    from noshow.scoring.predictor import Prediction
    from noshow.scoring.risk_profile import RiskProfile
    from noshow.settings import Settings
    from noshow.storage.record_store import RecordStoreProtocol

__all__ = [
    "EffectivenessStats",
    "ExecutedIntervention",
    "InterventionEngine",
    "InterventionResult",
    "MessageDefaults",
    "aggregate_result",
]

logger = logging.getLogger(__name__)

# Profile reliability below this counts as a no-show history
NO_SHOW_HISTORY_RELIABILITY = 70


class InterventionResult(StrEnum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


def aggregate_result(outcomes: Sequence[ActionOutcome]) -> InterventionResult:
    """SUCCESS when nothing failed, FAILED when nothing succeeded, else PARTIAL."""
    succeeded = sum(1 for o in outcomes if o.status.succeeded)
    if succeeded == len(outcomes):
        return InterventionResult.SUCCESS
    if succeeded == 0:
        return InterventionResult.FAILED
    return InterventionResult.PARTIAL


@dataclass(frozen=True)
class ExecutedIntervention:
    """Terminal record of one rule execution.

    Only ``effectiveness`` may be attached later, via ``with_effectiveness``.
    """

    id: str
    rule_id: str
    appointment_id: str
    client_id: str
    executed_at: datetime
    actions: tuple[ActionOutcome, ...]
    result: InterventionResult
    effectiveness: float | None = None

    @property
    def failed_actions(self) -> list[tuple[int, ActionOutcome]]:
        return [(i, a) for i, a in enumerate(self.actions) if a.status == ActionStatus.FAILED]

    def with_effectiveness(self, value: float) -> ExecutedIntervention:
        if not 0.0 <= value <= 1.0:
            msg = f"effectiveness must be within [0, 1], got {value}"
            raise ValueError(msg)
        return replace(self, effectiveness=value)

    def with_action(self, index: int, outcome: ActionOutcome) -> ExecutedIntervention:
        """Replace one outcome (operator retry) and recompute the result."""
        actions = (*self.actions[:index], outcome, *self.actions[index + 1 :])
        return replace(self, actions=actions, result=aggregate_result(actions))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "appointment_id": self.appointment_id,
            "client_id": self.client_id,
            "executed_at": self.executed_at.isoformat(),
            "actions": [a.to_dict() for a in self.actions],
            "result": str(self.result),
            "effectiveness": self.effectiveness,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutedIntervention:
        executed_at = data["executed_at"]
        if isinstance(executed_at, str):
            executed_at = datetime.fromisoformat(executed_at)
        return cls(
            id=data["id"],
            rule_id=data["rule_id"],
            appointment_id=data["appointment_id"],
            client_id=data["client_id"],
            executed_at=executed_at,
            actions=tuple(ActionOutcome.from_dict(a) for a in data.get("actions", [])),
            result=InterventionResult(data["result"]),
            effectiveness=data.get("effectiveness"),
        )


@dataclass(frozen=True)
class RateStat:
    count: int
    success_rate: float


@dataclass(frozen=True)
class EffectivenessStats:
    total_interventions: int
    success_rate: float
    average_effectiveness: float | None
    by_rule: dict[str, RateStat] = field(default_factory=dict)
    by_channel: dict[str, RateStat] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageDefaults:
    """Business identity and formats used when rendering messages."""

    business_name: str = "Studio Bella"
    business_phone: str = "(11) 99999-9999"
    business_address: str = "Salon address"
    currency_symbol: str = "R$"
    date_format: str = "%d/%m/%Y"
    time_format: str = "%H:%M"

    @classmethod
    def from_settings(cls, settings: Settings) -> MessageDefaults:
        return cls(
            business_name=settings.business_name,
            business_phone=settings.business_phone,
            business_address=settings.business_address,
            currency_symbol=settings.currency_symbol,
            date_format=settings.date_format,
            time_format=settings.time_format,
        )

    def money(self, amount: float) -> str:
        return f"{self.currency_symbol} {amount:.2f}"


def hours_until(later: datetime, now: datetime) -> int:
    """Whole hours from *now* to *later*, truncated toward zero."""
    return int((as_utc(later) - as_utc(now)).total_seconds() / 3600)


class InterventionEngine:
    """Chooses and executes intervention rules for single appointments."""

    def __init__(
        self,
        rules: RuleSet,
        renderer: TemplateRenderer,
        dispatcher: ActionDispatcher,
        record_store: RecordStoreProtocol,
        defaults: MessageDefaults | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._rules = rules
        self._renderer = renderer
        self._dispatcher = dispatcher
        self._store = record_store
        self._defaults = defaults or MessageDefaults()
        self._clock = clock

    # -- rule selection -----------------------------------------------------

    def evaluate(
        self,
        appointment: AppointmentSnapshot,
        prediction: Prediction,
        profile: RiskProfile,
    ) -> list[InterventionRule]:
        """Eligible rules for *appointment*, lowest priority number first.

        Raises:
            RecordStoreError: the cooldown lookup failed.
        """
        now = self._clock()
        ctx = TriggerContext(
            risk_level=prediction.risk_level,
            risk_score=prediction.risk_score,
            hours_until=hours_until(appointment.scheduled_for, now),
            appointment_value=appointment.service_price,
            is_first_time=appointment.is_first_time,
            has_no_show_history=profile.factors.reliability < NO_SHOW_HISTORY_RELIABILITY,
        )

        eligible: list[InterventionRule] = []
        for rule in self._rules.active():
            if self._in_cooldown(rule, appointment.id, now):
                logger.debug("Rule %s in cooldown for %s", rule.id, appointment.id)
                continue
            if rule.conditions.matches(ctx):
                eligible.append(rule)

        # sorted() is stable: equal priorities keep declaration order
        return sorted(eligible, key=lambda r: r.priority)

    def _in_cooldown(self, rule: InterventionRule, appointment_id: str, now: datetime) -> bool:
        if rule.cooldown_hours <= 0:
            return False
        last = self._store.get_last_execution(rule.id, appointment_id)
        if last is None:
            return False
        return now - last.executed_at < timedelta(hours=rule.cooldown_hours)

    # -- execution ----------------------------------------------------------

    def message_variables(
        self,
        action: InterventionAction,
        appointment: AppointmentSnapshot,
        client: Client,
        professional: Professional,
    ) -> dict[str, Any]:
        d = self._defaults
        when = appointment.scheduled_for
        variables: dict[str, Any] = {
            "clientName": client.name,
            "serviceName": appointment.service_name,
            "appointmentDate": when.strftime(d.date_format),
            "appointmentTime": when.strftime(d.time_format),
            "serviceValue": d.money(appointment.service_price),
            "businessName": professional.business_name or professional.name or d.business_name,
            "businessPhone": professional.phone or d.business_phone,
            "businessAddress": professional.address or d.business_address,
            "professionalName": professional.name,
            **action.parameters,
        }
        if "percentage" in action.parameters:
            variables["amount"] = d.money(payment_amount(action, appointment))
        return variables

    async def execute_action(
        self,
        action: InterventionAction,
        appointment: AppointmentSnapshot,
        client: Client,
        professional: Professional,
    ) -> ActionOutcome:
        try:
            variables = self.message_variables(action, appointment, client, professional)
            message = self._renderer.render(action.template_id, variables)
            subject = self._renderer.render_subject(action.template_id, variables)
            return await self._dispatcher.dispatch(
                action, appointment, client, message, subject=subject
            )
        except Exception as exc:
            logger.exception(
                "Action %s/%s crashed for appointment %s",
                action.channel,
                action.template_id,
                appointment.id,
            )
            return ActionOutcome(
                channel=action.channel,
                template_id=action.template_id,
                status=ActionStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}"[:200],
            )

    async def execute(
        self,
        rule: InterventionRule,
        appointment: AppointmentSnapshot,
        client: Client,
        professional: Professional,
    ) -> ExecutedIntervention:
        """Run *rule*'s actions sequentially, in declared order."""
        executed_at = self._clock()
        outcomes: list[ActionOutcome] = []
        for action in rule.actions:
            outcomes.append(await self.execute_action(action, appointment, client, professional))

        record = ExecutedIntervention(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            appointment_id=appointment.id,
            client_id=client.id,
            executed_at=executed_at,
            actions=tuple(outcomes),
            result=aggregate_result(outcomes),
        )
        logger.info(
            "Rule %s executed for %s: %s (%d/%d actions ok)",
            rule.id,
            appointment.id,
            record.result,
            sum(1 for o in outcomes if o.status.succeeded),
            len(outcomes),
        )
        return record

    # -- configuration ------------------------------------------------------

    def active_rules(self) -> list[InterventionRule]:
        return self._rules.active()

    def get_rule(self, rule_id: str) -> InterventionRule | None:
        return self._rules.get(rule_id)

    def update_rule(self, rule_id: str, **changes: Any) -> bool:
        return self._rules.update(rule_id, **changes)

    # -- measurement --------------------------------------------------------

    @staticmethod
    def annotate_effectiveness(
        record: ExecutedIntervention, effectiveness: float
    ) -> ExecutedIntervention:
        return record.with_effectiveness(effectiveness)

    @staticmethod
    def effectiveness_stats(records: Iterable[ExecutedIntervention]) -> EffectivenessStats:
        records = list(records)
        if not records:
            return EffectivenessStats(0, 0.0, None)

        def rate(ok: int, total: int) -> float:
            return round(ok / total, 4) if total else 0.0

        successes = sum(1 for r in records if r.result == InterventionResult.SUCCESS)
        measured = [r.effectiveness for r in records if r.effectiveness is not None]

        per_rule: dict[str, list[int]] = {}
        for r in records:
            counts = per_rule.setdefault(r.rule_id, [0, 0])
            counts[0] += 1
            counts[1] += r.result == InterventionResult.SUCCESS

        per_channel: dict[str, list[int]] = {}
        for r in records:
            for outcome in r.actions:
                counts = per_channel.setdefault(str(outcome.channel), [0, 0])
                counts[0] += 1
                counts[1] += outcome.status.succeeded

        return EffectivenessStats(
            total_interventions=len(records),
            success_rate=rate(successes, len(records)),
            average_effectiveness=(
                round(sum(measured) / len(measured), 4) if measured else None
            ),
            by_rule={k: RateStat(n, rate(ok, n)) for k, (n, ok) in per_rule.items()},
            by_channel={k: RateStat(n, rate(ok, n)) for k, (n, ok) in per_channel.items()},
        )
