"""Deterministic no-show predictor.

Rule-based scorer. No ML — fully auditable and explainable.
Five sub-scores in [0, 100] are combined by fixed weights:

    client history   0.35
    booking pattern  0.25
    engagement       0.20
    external         0.15
    temporal         0.05

Levels (rounded score):
    0 – 29   →  LOW
    30 – 59  →  MEDIUM
    60 – 89  →  HIGH
    90 – 100 →  CRITICAL
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from noshow.domain import (
    AppointmentSnapshot,
    ClientHistorySnapshot,
    Clock,
    RiskLevel,
    utc_now,
)
from noshow.scoring.factors import PredictionFactors, extract_factors, round_half_up
from noshow.scoring.weights import DEFAULT_HOLIDAYS, PredictionWeights, RiskThresholds

__all__ = ["AccuracyReport", "NoShowPredictor", "Prediction"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """Immutable result of one prediction call — always a full replacement."""

    appointment_id: str
    client_id: str
    risk_score: int  # 0 – 100
    risk_level: RiskLevel
    confidence: float  # 0.0 – 1.0
    primary_factors: list[str]
    secondary_factors: list[str]
    recommendations: list[str]
    created_at: datetime
    sub_scores: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class AccuracyReport:
    accuracy: float
    precision: float
    recall: float
    recommendations: list[str]


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


_LEVEL_RECOMMENDATIONS: dict[RiskLevel, list[str]] = {
    RiskLevel.CRITICAL: [
        "Confirm attendance by phone",
        "Request advance payment",
        "Direct contact 24h before",
    ],
    RiskLevel.HIGH: [
        "Send an extra WhatsApp reminder",
        "Offer an incentive for confirming",
        "Confirm attendance 2h before",
    ],
    RiskLevel.MEDIUM: [
        "SMS reminder 24h before",
        "Mention loyalty benefits",
    ],
    RiskLevel.LOW: [
        "Standard reminder is enough",
    ],
}

_SUB_SCORE_LABELS: dict[str, str] = {
    "client_history": "Client attendance history",
    "booking_pattern": "Booking pattern",
    "engagement": "Low client engagement",
    "external": "Seasonal and holiday effects",
    "temporal": "Time of day",
}


class NoShowPredictor:
    """Combines extracted factors into a 0–100 no-show risk score.

    Pure apart from the injected clock: identical inputs and the same
    "now" always produce an identical prediction.
    """

    def __init__(
        self,
        weights: PredictionWeights | None = None,
        thresholds: RiskThresholds | None = None,
        clock: Clock = utc_now,
        holidays: tuple[tuple[int, int], ...] = DEFAULT_HOLIDAYS,
    ) -> None:
        self._weights = weights or PredictionWeights()
        self._thresholds = thresholds or RiskThresholds()
        self._clock = clock
        self._holidays = holidays

    @property
    def thresholds(self) -> RiskThresholds:
        return self._thresholds

    def predict(
        self,
        appointment: AppointmentSnapshot,
        history: ClientHistorySnapshot,
        external_factors: dict[str, Any] | None = None,
    ) -> Prediction:
        """Predict the no-show risk of a single appointment."""
        now = self._clock()
        factors = extract_factors(
            appointment, history, now, external_factors, self._holidays
        )

        sub_scores = {
            "client_history": self.history_score(factors.history),
            "booking_pattern": self.booking_score(factors),
            "engagement": self.engagement_score(factors),
            "external": self.external_score(factors),
            "temporal": self.temporal_score(factors),
        }
        contributions = {
            name: value * getattr(self._weights, name)
            for name, value in sub_scores.items()
        }
        raw = _clamp(sum(contributions.values()))
        score = round_half_up(raw)
        level = self._thresholds.level_for(score)

        primary, secondary = self._key_factors(factors, score, contributions)
        logger.debug(
            "Predicted %s (%d) for appointment %s", level, score, appointment.id
        )
        return Prediction(
            appointment_id=appointment.id,
            client_id=appointment.client_id,
            risk_score=score,
            risk_level=level,
            confidence=self.confidence(history),
            primary_factors=primary,
            secondary_factors=secondary,
            recommendations=self._recommendations(level, factors),
            created_at=now,
            sub_scores=sub_scores,
        )

    # ── sub-scores ──────────────────────────────────────────────

    @staticmethod
    def history_score(history: ClientHistorySnapshot) -> float:
        """No-show rate dominates; a thin record adds risk."""
        if history.total_appointments <= 0:
            return 50.0  # unknown client → neutral

        score = history.no_show_rate * 80
        score += history.cancel_rate * 30
        score -= history.completion_rate * 20
        if history.total_appointments < 3:
            score += 20
        return _clamp(score)

    @staticmethod
    def booking_score(factors: PredictionFactors) -> float:
        score = 0.0

        # Lead time: last-minute bookings are the largest single penalty
        if factors.advance_booking_days < 1:
            score += 40
        elif factors.advance_booking_days < 3:
            score += 25
        elif factors.advance_booking_days > 30:
            score += 15

        if factors.day_of_week == 0:  # Monday
            score += 15
        elif factors.is_weekend:
            score += 10

        if factors.time_of_day < 9 or factors.time_of_day > 18:
            score += 10

        if factors.service_value > 200:
            score -= 10
        elif factors.service_value < 50:
            score += 15

        if factors.is_paid_in_advance:
            score -= 25
        else:
            score += 20

        return _clamp(score)

    @staticmethod
    def engagement_score(factors: PredictionFactors) -> float:
        score = 0.0

        if factors.reminders_sent == 0:
            score += 30
        elif factors.reminders_sent == 1:
            score += 15
        else:
            score -= 5

        if factors.last_contact_days > 90:
            score += 25
        elif factors.last_contact_days > 30:
            score += 10

        if factors.loyalty_level >= 4:
            score -= 20
        elif factors.loyalty_level >= 2:
            score -= 10
        else:
            score += 15

        return _clamp(score)

    @staticmethod
    def external_score(factors: PredictionFactors) -> float:
        score = factors.seasonal_factor * 20
        score += factors.holiday_proximity * 15
        if factors.weather_risk:
            score += factors.weather_risk * 25
        return _clamp(score)

    @staticmethod
    def temporal_score(factors: PredictionFactors) -> float:
        score = 0.0
        if 14 <= factors.time_of_day <= 17:
            score -= 10
        if factors.is_weekend:
            score += 5
        return _clamp(score)

    @staticmethod
    def confidence(history: ClientHistorySnapshot) -> float:
        """Larger, more consistent histories give more confidence."""
        confidence = 0.5
        total = history.total_appointments
        if total >= 10:
            confidence += 0.3
        elif total >= 5:
            confidence += 0.2
        elif total >= 3:
            confidence += 0.1

        if total > 0:
            consistency = 1 - (
                max(0, history.cancel_count) + max(0, history.no_show_count)
            ) / total
            confidence += consistency * 0.2

        return round(_clamp(confidence, 0.0, 1.0), 2)

    # ── explanation ─────────────────────────────────────────────

    @staticmethod
    def _key_factors(
        factors: PredictionFactors,
        score: int,
        contributions: dict[str, float],
    ) -> tuple[list[str], list[str]]:
        primary: list[str] = []
        secondary: list[str] = []
        history = factors.history

        no_show_rate = max(0, history.no_show_count) / max(1, history.total_appointments)
        if no_show_rate > 0.2:
            primary.append(f"History of {round_half_up(no_show_rate * 100)}% no-shows")
        if factors.advance_booking_days < 1:
            primary.append("Last-minute booking")
        if not factors.is_paid_in_advance and factors.service_value > 100:
            primary.append("No advance payment")

        if factors.last_contact_days > 90:
            secondary.append("Client inactive for more than 3 months")
        if factors.reminders_sent == 0:
            secondary.append("No reminders sent")
        if factors.holiday_proximity > 0.5:
            secondary.append("Close to a holiday")
        if factors.loyalty_level < 2:
            secondary.append("Low loyalty level")

        if not primary and score > 0:
            top = max(contributions, key=lambda name: contributions[name])
            primary.append(_SUB_SCORE_LABELS[top])

        return primary, secondary

    @staticmethod
    def _recommendations(level: RiskLevel, factors: PredictionFactors) -> list[str]:
        recommendations = list(_LEVEL_RECOMMENDATIONS[level])

        if not factors.is_paid_in_advance and factors.service_value > 150:
            recommendations.append("Suggest advance payment with a discount")
        if factors.reminders_sent == 0:
            recommendations.append("Enable automatic reminders")
        if factors.loyalty_level < 2:
            recommendations.append("Highlight the loyalty program")

        return recommendations

    # ── calibration ─────────────────────────────────────────────

    @staticmethod
    def analyze_accuracy(
        predictions: Sequence[Prediction],
        outcomes: Sequence[str],
    ) -> AccuracyReport:
        """Compare past predictions with actual appointment outcomes.

        HIGH and CRITICAL count as a predicted no-show; an outcome of
        ``"NO_SHOW"`` counts as an actual one.
        """
        correct = tp = fp = fn = 0
        for prediction, outcome in zip(predictions, outcomes, strict=False):
            predicted = prediction.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
            actual = outcome == "NO_SHOW"
            if predicted == actual:
                correct += 1
            if predicted and actual:
                tp += 1
            elif predicted:
                fp += 1
            elif actual:
                fn += 1

        n = min(len(predictions), len(outcomes))
        accuracy = correct / n if n else 0.0
        precision = tp / (tp + fp) if tp + fp else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0

        recommendations: list[str] = []
        if accuracy < 0.7:
            recommendations.append("Review prediction factor weights")
        if precision < 0.6:
            recommendations.append("Raise thresholds to reduce false positives")
        if recall < 0.6:
            recommendations.append("Lower thresholds to catch more real no-shows")

        return AccuracyReport(
            accuracy=round(accuracy, 4),
            precision=round(precision, 4),
            recall=round(recall, 4),
            recommendations=recommendations,
        )
