"""Scoring tunables — hand-tuned constants, not learned parameters.

Every weight set must sum to 1.0. Threshold sets are evaluated from the
most severe level downwards, so CRITICAL always wins at a shared boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from noshow.domain import RiskLevel

__all__ = [
    "DEFAULT_EVENT_DELTAS",
    "DEFAULT_HOLIDAYS",
    "PredictionWeights",
    "ProfileThresholds",
    "ProfileWeights",
    "RiskThresholds",
    "ScoreEvent",
]


@dataclass(frozen=True)
class PredictionWeights:
    client_history: float = 0.35
    booking_pattern: float = 0.25
    engagement: float = 0.20
    external: float = 0.15
    temporal: float = 0.05


@dataclass(frozen=True)
class RiskThresholds:
    """Per-appointment risk levels (score 0–100).

    ``alert`` is the upper edge of the original HIGH band; it is kept as a
    tunable for callers that flag HIGH predictions close to CRITICAL.
    """

    medium: float = 30
    high: float = 60
    alert: float = 80
    critical: float = 90

    def level_for(self, score: float) -> RiskLevel:
        if score >= self.critical:
            return RiskLevel.CRITICAL
        if score >= self.high:
            return RiskLevel.HIGH
        if score >= self.medium:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def is_alert(self, score: float) -> bool:
        return self.alert <= score < self.critical


@dataclass(frozen=True)
class ProfileWeights:
    reliability: float = 0.40
    engagement: float = 0.25
    recency: float = 0.15
    value: float = 0.10
    loyalty: float = 0.10


@dataclass(frozen=True)
class ProfileThresholds:
    """Standing client-profile levels (score 0–100)."""

    medium: float = 50
    high: float = 70
    critical: float = 85

    def level_for(self, score: float) -> RiskLevel:
        if score >= self.critical:
            return RiskLevel.CRITICAL
        if score >= self.high:
            return RiskLevel.HIGH
        if score >= self.medium:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


class ScoreEvent(StrEnum):
    """Lifecycle events that nudge a standing profile score."""

    APPOINTMENT_COMPLETED = "APPOINTMENT_COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLATION = "CANCELLATION"
    PAYMENT = "PAYMENT"
    ENGAGEMENT = "ENGAGEMENT"


DEFAULT_EVENT_DELTAS: dict[str, int] = {
    ScoreEvent.APPOINTMENT_COMPLETED: -5,
    ScoreEvent.NO_SHOW: +15,
    ScoreEvent.CANCELLATION: +8,
    ScoreEvent.PAYMENT: -3,
    ScoreEvent.ENGAGEMENT: -2,
}

# (month, day): Brazilian national holidays, Carnival approximated
DEFAULT_HOLIDAYS: tuple[tuple[int, int], ...] = (
    (1, 1),
    (2, 13),
    (4, 21),
    (5, 1),
    (9, 7),
    (10, 12),
    (11, 2),
    (11, 15),
    (12, 25),
)
