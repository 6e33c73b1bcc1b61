"""Standing per-client risk profiles.

Five quality factors (0–100, higher is better) are computed independently
from the client's longitudinal record, inverted and weighted into a single
score:

    score = 100 − Σ weight · (100 − factor)

The levels and segment predicates are applied to that number as configured,
even though the segment list mixes a value axis with a risk axis.

Profiles are kept in memory per client; ``update_score_after_event`` is the
only way to move the current score between full recomputes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from noshow.domain import (
    AppointmentStatus,
    Clock,
    EngagementSnapshot,
    LoyaltySnapshot,
    PastAppointment,
    RiskLevel,
    utc_now,
)
from noshow.scoring.factors import days_between, round_half_up
from noshow.scoring.segments import SEGMENTS, Segment, classify
from noshow.scoring.weights import (
    DEFAULT_EVENT_DELTAS,
    ProfileThresholds,
    ProfileWeights,
    ScoreEvent,
)

__all__ = [
    "ProfileFactors",
    "RiskProfile",
    "RiskScoringSystem",
    "RiskStatistics",
    "ScoreChange",
    "ScoreHistoryEntry",
    "Trend",
]

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50
TREND_STEP = 5


class Trend(StrEnum):
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


@dataclass(frozen=True)
class ProfileFactors:
    reliability: float
    engagement: float
    recency: float
    value: float
    loyalty: float

    def __post_init__(self) -> None:
        for name in ("reliability", "engagement", "recency", "value", "loyalty"):
            object.__setattr__(self, name, _clamp(getattr(self, name)))


@dataclass(frozen=True)
class ScoreHistoryEntry:
    date: datetime
    score: int
    event: ScoreEvent
    change: int


@dataclass(frozen=True)
class RiskProfile:
    client_id: str
    current_score: int
    risk_level: RiskLevel
    trend: Trend
    factors: ProfileFactors
    last_updated: datetime
    history: tuple[ScoreHistoryEntry, ...] = ()


@dataclass(frozen=True)
class ScoreChange:
    old_score: int
    new_score: int
    change: int


@dataclass(frozen=True)
class RiskStatistics:
    total_clients: int
    risk_distribution: dict[str, int]
    average_score: float
    trends: dict[str, int] = field(default_factory=dict)


class RiskScoringSystem:
    """Computes, stores and nudges client risk profiles."""

    def __init__(
        self,
        weights: ProfileWeights | None = None,
        thresholds: ProfileThresholds | None = None,
        event_deltas: dict[str, int] | None = None,
        segments: Sequence[Segment] = SEGMENTS,
        history_limit: int = 50,
        clock: Clock = utc_now,
    ) -> None:
        self._weights = weights or ProfileWeights()
        self._thresholds = thresholds or ProfileThresholds()
        self._deltas = dict(event_deltas or DEFAULT_EVENT_DELTAS)
        self._segments = tuple(segments)
        self._history_limit = max(1, history_limit)
        self._clock = clock
        self._profiles: dict[str, RiskProfile] = {}
        self._lock = threading.Lock()

    # -- public API ---------------------------------------------------------

    def score_client(
        self,
        client_id: str,
        appointments: Sequence[PastAppointment],
        loyalty: LoyaltySnapshot,
        engagement: EngagementSnapshot,
    ) -> RiskProfile:
        """Full recompute of a client's profile; replaces the stored one."""
        now = self._clock()
        factors = ProfileFactors(
            reliability=self.reliability_score(appointments),
            engagement=self.engagement_score(engagement),
            recency=self.recency_score(appointments, now),
            value=self.value_score(appointments),
            loyalty=self.loyalty_score(loyalty, appointments, now),
        )
        score = round_half_up(self.overall_score(factors))

        with self._lock:
            previous = self._profiles.get(client_id)
            profile = RiskProfile(
                client_id=client_id,
                current_score=score,
                risk_level=self._thresholds.level_for(score),
                trend=self._trend(previous.current_score if previous else None, score),
                factors=factors,
                last_updated=now,
                history=previous.history if previous else (),
            )
            self._profiles[client_id] = profile

        logger.info(
            "Client %s scored %d (%s, %s)",
            client_id,
            score,
            profile.risk_level,
            profile.trend,
        )
        return profile

    def get_profile(self, client_id: str) -> RiskProfile | None:
        with self._lock:
            return self._profiles.get(client_id)

    def segment(self, profile: RiskProfile) -> Segment:
        return classify(profile, self._segments)

    def update_score_after_event(
        self,
        client_id: str,
        event: ScoreEvent | str,
        context: dict[str, Any] | None = None,
    ) -> ScoreChange:
        """Apply the fixed delta for *event* to the stored score.

        Unknown clients start from the neutral score. The applied change is
        the clamped difference, so a NO_SHOW at 95 moves the score by 5.
        """
        kind = ScoreEvent(event)
        delta = self._deltas[kind]
        now = self._clock()

        with self._lock:
            current = self._profiles.get(client_id)
            old = current.current_score if current else NEUTRAL_SCORE
            new = int(_clamp(old + delta))
            entry = ScoreHistoryEntry(date=now, score=new, event=kind, change=new - old)

            if current is None:
                current = RiskProfile(
                    client_id=client_id,
                    current_score=old,
                    risk_level=self._thresholds.level_for(old),
                    trend=Trend.STABLE,
                    factors=ProfileFactors(
                        NEUTRAL_SCORE, NEUTRAL_SCORE, NEUTRAL_SCORE, NEUTRAL_SCORE, NEUTRAL_SCORE
                    ),
                    last_updated=now,
                )
            history = (*current.history, entry)[-self._history_limit :]
            self._profiles[client_id] = replace(
                current,
                current_score=new,
                risk_level=self._thresholds.level_for(new),
                trend=self._trend(old, new),
                last_updated=now,
                history=history,
            )

        logger.info(
            "Client %s %s: %d -> %d%s",
            client_id,
            kind,
            old,
            new,
            f" ({context})" if context else "",
        )
        return ScoreChange(old_score=old, new_score=new, change=new - old)

    def high_risk_clients(self, limit: int = 50) -> list[RiskProfile]:
        """Stored HIGH/CRITICAL profiles, riskiest first."""
        with self._lock:
            risky = [
                p
                for p in self._profiles.values()
                if p.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
            ]
        risky.sort(key=lambda p: p.current_score, reverse=True)
        return risky[:limit]

    def risk_statistics(self) -> RiskStatistics:
        with self._lock:
            profiles = list(self._profiles.values())
        distribution = {level.value: 0 for level in RiskLevel}
        trends = {Trend.IMPROVING: 0, Trend.STABLE: 0, Trend.DECLINING: 0}
        for p in profiles:
            distribution[p.risk_level] += 1
            trends[p.trend] += 1
        average = sum(p.current_score for p in profiles) / len(profiles) if profiles else 0.0
        return RiskStatistics(
            total_clients=len(profiles),
            risk_distribution=distribution,
            average_score=round(average, 2),
            trends=trends,
        )

    @staticmethod
    def generate_recommendations(profile: RiskProfile) -> list[str]:
        recommendations: list[str] = []
        if profile.risk_level == RiskLevel.CRITICAL:
            recommendations += [
                "Mandatory contact before booking",
                "Require advance payment for every service",
                "Phone confirmation 24h and 2h before",
            ]
        if profile.factors.reliability < 50:
            recommendations += ["Apply a double-confirmation policy", "Consider a booking fee"]
        if profile.factors.engagement < 50:
            recommendations += ["Increase contact frequency", "Offer engagement incentives"]
        if profile.factors.recency < 50:
            recommendations += ["Personalised reactivation campaign", "Special comeback offer"]
        if profile.factors.value < 50:
            recommendations += ["Service upsell strategy", "Promotional bundles"]
        return recommendations

    # -- factor formulas ----------------------------------------------------

    @staticmethod
    def reliability_score(appointments: Sequence[PastAppointment]) -> float:
        total = len(appointments)
        if total == 0:
            return 50.0

        completed = sum(1 for a in appointments if a.status == AppointmentStatus.COMPLETED)
        no_shows = sum(1 for a in appointments if a.status == AppointmentStatus.NO_SHOW)
        cancelled = sum(1 for a in appointments if a.status == AppointmentStatus.CANCELLED)

        score = 100 - (no_shows / total) * 80 - (cancelled / total) * 40
        if completed / total >= 0.9:
            score += 10
        if total < 3:
            score -= 20
        return _clamp(score)

    @staticmethod
    def engagement_score(engagement: EngagementSnapshot) -> float:
        score = 50.0

        if engagement.reminder_response_rate >= 0.8:
            score += 20
        elif engagement.reminder_response_rate >= 0.5:
            score += 10
        else:
            score -= 15

        minutes = engagement.message_response_minutes
        if minutes:
            if minutes <= 60:
                score += 15
            elif minutes <= 240:
                score += 10
            else:
                score -= 10

        if engagement.reviews_submitted > 0:
            score += engagement.reviews_submitted * 5
        if engagement.self_service_usage >= 3:
            score += 10
        if engagement.loyalty_participation:
            score += 15

        return _clamp(score)

    @staticmethod
    def recency_score(appointments: Sequence[PastAppointment], now: datetime) -> float:
        if not appointments:
            return 50.0

        last = max(a.scheduled_for for a in appointments)
        days = days_between(now, last)
        for limit, value in ((30, 100), (60, 80), (90, 60), (180, 40), (365, 20)):
            if days <= limit:
                return float(value)
        return 10.0

    @staticmethod
    def value_score(appointments: Sequence[PastAppointment]) -> float:
        if not appointments:
            return 50.0

        total_spent = sum(
            a.service_price for a in appointments if a.status == AppointmentStatus.COMPLETED
        )
        frequency = len(appointments)
        average_ticket = total_spent / frequency
        score = 50.0

        if total_spent >= 2000:
            score += 30
        elif total_spent >= 1000:
            score += 20
        elif total_spent >= 500:
            score += 10
        elif total_spent < 100:
            score -= 20

        if average_ticket >= 200:
            score += 15
        elif average_ticket >= 100:
            score += 10
        elif average_ticket < 50:
            score -= 15

        if frequency >= 10:
            score += 15
        elif frequency >= 5:
            score += 10
        elif frequency < 3:
            score -= 10

        return _clamp(score)

    @staticmethod
    def loyalty_score(
        loyalty: LoyaltySnapshot,
        appointments: Sequence[PastAppointment],
        now: datetime,
    ) -> float:
        score = 50.0

        if loyalty.points >= 500:
            score += 25
        elif loyalty.points >= 200:
            score += 15
        elif loyalty.points >= 100:
            score += 10

        if appointments:
            first = min(a.scheduled_for for a in appointments)
            tenure = days_between(now, first)
            if tenure >= 365:
                score += 20
            elif tenure >= 180:
                score += 15
            elif tenure >= 90:
                score += 10

        if len(appointments) >= 12:
            regularity = len(appointments) / _months_spanned(appointments)
            if regularity >= 1:
                score += 15
            elif regularity >= 0.5:
                score += 10

        return _clamp(score)

    def overall_score(self, factors: ProfileFactors) -> float:
        w = self._weights
        inverted = (
            (100 - factors.reliability) * w.reliability
            + (100 - factors.engagement) * w.engagement
            + (100 - factors.recency) * w.recency
            + (100 - factors.value) * w.value
            + (100 - factors.loyalty) * w.loyalty
        )
        return _clamp(100 - inverted)

    @staticmethod
    def _trend(previous: int | None, current: int) -> Trend:
        if previous is None:
            return Trend.STABLE
        if current <= previous - TREND_STEP:
            return Trend.IMPROVING
        if current >= previous + TREND_STEP:
            return Trend.DECLINING
        return Trend.STABLE


def _months_spanned(appointments: Sequence[PastAppointment]) -> int:
    if len(appointments) < 2:
        return 1
    first = min(a.scheduled_for for a in appointments)
    last = max(a.scheduled_for for a in appointments)
    months = (last.year - first.year) * 12 + (last.month - first.month)
    return max(1, months)
