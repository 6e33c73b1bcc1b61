"""Intervention rules — trigger conditions plus an ordered action plan.

Rules are immutable. The active set lives in a ``RuleSet`` that readers
snapshot without locking; ``update`` builds a replacement tuple and swaps
it in under a write lock, so evaluation never sees a half-applied change.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from noshow.domain import ChannelType, RiskLevel
from noshow.errors import RuleConfigError

__all__ = [
    "DEFAULT_RULES",
    "ExecutionTiming",
    "InterventionAction",
    "InterventionRule",
    "RuleSet",
    "TriggerConditions",
    "TriggerContext",
    "load_rules",
]

logger = logging.getLogger(__name__)


class ExecutionTiming(StrEnum):
    IMMEDIATE = "IMMEDIATE"
    HOURS_BEFORE = "HOURS_BEFORE"
    SPECIFIC_TIME = "SPECIFIC_TIME"


@dataclass(frozen=True)
class TriggerContext:
    """Facts about one appointment that trigger clauses are checked against."""

    risk_level: RiskLevel
    risk_score: int
    hours_until: int
    appointment_value: float
    is_first_time: bool
    has_no_show_history: bool


@dataclass(frozen=True)
class TriggerConditions:
    """Conjunction of clauses; ``None`` means the clause is not checked."""

    risk_levels: frozenset[RiskLevel]
    score_min: float | None = None
    score_max: float | None = None
    hours_min: float | None = None
    hours_max: float | None = None
    min_value: float | None = None
    is_first_time: bool | None = None
    has_no_show_history: bool | None = None

    def matches(self, ctx: TriggerContext) -> bool:
        if ctx.risk_level not in self.risk_levels:
            return False
        if self.score_min is not None and ctx.risk_score < self.score_min:
            return False
        if self.score_max is not None and ctx.risk_score > self.score_max:
            return False
        if self.hours_min is not None and ctx.hours_until < self.hours_min:
            return False
        if self.hours_max is not None and ctx.hours_until > self.hours_max:
            return False
        if self.min_value is not None and ctx.appointment_value < self.min_value:
            return False
        if self.is_first_time is not None and self.is_first_time != ctx.is_first_time:
            return False
        if (
            self.has_no_show_history is not None
            and self.has_no_show_history != ctx.has_no_show_history
        ):
            return False
        return True


@dataclass(frozen=True)
class InterventionAction:
    """One channel-bound step of a rule's plan.

    ``timing`` is hours before the appointment for HOURS_BEFORE and the
    hour of day on the appointment date for SPECIFIC_TIME.
    """

    channel: ChannelType
    template_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    delay_minutes: int = 0
    execute_at: ExecutionTiming = ExecutionTiming.IMMEDIATE
    timing: float | None = None


@dataclass(frozen=True)
class InterventionRule:
    id: str
    name: str
    description: str
    conditions: TriggerConditions
    actions: tuple[InterventionAction, ...]
    priority: int
    is_active: bool = True
    cooldown_hours: float = 0


DEFAULT_RULES: tuple[InterventionRule, ...] = (
    InterventionRule(
        id="critical_confirmation",
        name="Critical confirmation",
        description="Requires confirmation from critical-risk clients",
        conditions=TriggerConditions(
            risk_levels=frozenset({RiskLevel.CRITICAL}), hours_min=24, hours_max=48
        ),
        actions=(
            InterventionAction(
                ChannelType.WHATSAPP,
                "critical_confirmation_whatsapp",
                {"requiresResponse": True},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=24,
            ),
            InterventionAction(
                ChannelType.PHONE_CALL,
                "critical_confirmation_call",
                {"maxAttempts": 3},
                delay_minutes=60,
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=4,
            ),
            InterventionAction(
                ChannelType.PAYMENT_REQUEST,
                "advance_payment_required",
                {"percentage": 50},
            ),
        ),
        priority=1,
        cooldown_hours=12,
    ),
    InterventionRule(
        id="high_risk_intensive",
        name="Intensive reminders",
        description="Multiple reminders for high-risk clients",
        conditions=TriggerConditions(
            risk_levels=frozenset({RiskLevel.HIGH}), hours_min=12, hours_max=72
        ),
        actions=(
            InterventionAction(
                ChannelType.SMS,
                "high_risk_reminder_sms",
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=48,
            ),
            InterventionAction(
                ChannelType.WHATSAPP,
                "high_risk_reminder_whatsapp",
                {"includeIncentive": True, "bonusPoints": 20},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=24,
            ),
            InterventionAction(
                ChannelType.EMAIL,
                "high_risk_reminder_email",
                {"includePolicies": True},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=12,
            ),
            InterventionAction(
                ChannelType.INCENTIVE_OFFER,
                "loyalty_point_bonus",
                {"bonusPoints": 20},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=6,
            ),
        ),
        priority=2,
        cooldown_hours=24,
    ),
    InterventionRule(
        id="first_time_client",
        name="First-time client",
        description="Extra care for new clients",
        conditions=TriggerConditions(
            risk_levels=frozenset({RiskLevel.MEDIUM, RiskLevel.HIGH}), is_first_time=True
        ),
        actions=(
            InterventionAction(
                ChannelType.WHATSAPP,
                "welcome_first_client",
                {"includeDirections": True},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=24,
            ),
            InterventionAction(
                ChannelType.SMS,
                "first_client_reminder",
                {"includeContact": True},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=2,
            ),
        ),
        priority=3,
        cooldown_hours=0,
    ),
    InterventionRule(
        id="high_value_appointment",
        name="High-value appointment",
        description="Extra care for expensive services",
        conditions=TriggerConditions(
            risk_levels=frozenset({RiskLevel.MEDIUM, RiskLevel.HIGH}), min_value=200
        ),
        actions=(
            InterventionAction(
                ChannelType.PHONE_CALL,
                "high_value_confirmation",
                {"emphasizeValue": True},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=24,
            ),
            InterventionAction(
                ChannelType.PAYMENT_REQUEST,
                "partial_advance_payment",
                {"percentage": 30},
            ),
        ),
        priority=2,
        cooldown_hours=48,
    ),
    InterventionRule(
        id="noshow_history",
        name="No-show history",
        description="Intervention for clients with a record of no-shows",
        conditions=TriggerConditions(
            risk_levels=frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL}),
            has_no_show_history=True,
        ),
        actions=(
            InterventionAction(
                ChannelType.CONFIRMATION_REQUIRED,
                "mandatory_confirmation",
                {"deadline": 4},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=24,
            ),
            InterventionAction(
                ChannelType.INCENTIVE_OFFER,
                "attendance_reward",
                {"rewardType": "discount", "value": 10},
                execute_at=ExecutionTiming.HOURS_BEFORE,
                timing=12,
            ),
        ),
        priority=1,
        cooldown_hours=24,
    ),
)


class RuleSet:
    """Process-wide rule configuration with atomic snapshot updates."""

    def __init__(self, rules: Iterable[InterventionRule] = DEFAULT_RULES) -> None:
        self._rules: tuple[InterventionRule, ...] = tuple(rules)
        self._write_lock = threading.Lock()

    def snapshot(self) -> tuple[InterventionRule, ...]:
        return self._rules

    def active(self) -> list[InterventionRule]:
        return [r for r in self._rules if r.is_active]

    def get(self, rule_id: str) -> InterventionRule | None:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def update(self, rule_id: str, **changes: Any) -> bool:
        """Replace one rule wholesale. Unknown ids and fields return False."""
        changes.pop("id", None)
        with self._write_lock:
            current = self._rules
            for index, rule in enumerate(current):
                if rule.id == rule_id:
                    break
            else:
                logger.warning("Rule update ignored: unknown rule id %s", rule_id)
                return False

            try:
                updated = dataclasses.replace(rule, **changes)
            except TypeError:
                logger.warning(
                    "Rule update ignored for %s: invalid fields %s",
                    rule_id,
                    sorted(changes),
                )
                return False

            self._rules = (*current[:index], updated, *current[index + 1 :])

        logger.info("Rule %s updated: %s", rule_id, sorted(changes))
        return True


# ---------------------------------------------------------------------------
# Rule files
# ---------------------------------------------------------------------------


class _RangeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min: float | None = None
    max: float | None = None


class _ConditionsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    risk_levels: list[RiskLevel] = Field(min_length=1)
    risk_score: _RangeIn | None = None
    hours_before: _RangeIn | None = None
    min_value: float | None = None
    is_first_time: bool | None = None
    has_no_show_history: bool | None = None


class _ActionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: ChannelType
    template: str = Field(min_length=1)
    parameters: dict[str, Any] = {}
    delay_minutes: int = Field(default=0, ge=0)
    execute_at: ExecutionTiming = ExecutionTiming.IMMEDIATE
    timing: float | None = None


class _RuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    conditions: _ConditionsIn
    actions: list[_ActionIn]
    priority: int
    is_active: bool = True
    cooldown_hours: float = Field(default=0, ge=0)

    def to_rule(self) -> InterventionRule:
        c = self.conditions
        score = c.risk_score or _RangeIn()
        hours = c.hours_before or _RangeIn()
        return InterventionRule(
            id=self.id,
            name=self.name,
            description=self.description,
            conditions=TriggerConditions(
                risk_levels=frozenset(c.risk_levels),
                score_min=score.min,
                score_max=score.max,
                hours_min=hours.min,
                hours_max=hours.max,
                min_value=c.min_value,
                is_first_time=c.is_first_time,
                has_no_show_history=c.has_no_show_history,
            ),
            actions=tuple(
                InterventionAction(
                    channel=a.channel,
                    template_id=a.template,
                    parameters=dict(a.parameters),
                    delay_minutes=a.delay_minutes,
                    execute_at=a.execute_at,
                    timing=a.timing,
                )
                for a in self.actions
            ),
            priority=self.priority,
            is_active=self.is_active,
            cooldown_hours=self.cooldown_hours,
        )


class _RuleFileIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rules: list[_RuleIn]


def load_rules(path: str | Path) -> tuple[InterventionRule, ...]:
    """Load and validate a JSON rule file, preserving declaration order.

    Raises:
        RuleConfigError: unreadable file, invalid JSON or schema, or
            duplicate rule ids.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        parsed = _RuleFileIn.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        msg = f"invalid rule file {path}: {exc}"
        raise RuleConfigError(msg) from exc

    seen: set[str] = set()
    for rule in parsed.rules:
        if rule.id in seen:
            msg = f"duplicate rule id {rule.id!r} in {path}"
            raise RuleConfigError(msg)
        seen.add(rule.id)

    rules = tuple(r.to_rule() for r in parsed.rules)
    logger.info("Loaded %d intervention rules from %s", len(rules), path)
    return rules
