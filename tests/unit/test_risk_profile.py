"""Tests for standing client risk profiles."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from noshow.domain import (
    AppointmentStatus,
    EngagementSnapshot,
    LoyaltySnapshot,
    PastAppointment,
    RiskLevel,
)
from noshow.scoring.risk_profile import (
    ProfileFactors,
    RiskScoringSystem,
    Trend,
)
from noshow.scoring.weights import ScoreEvent

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


def _past(days_ago: int, status: AppointmentStatus, price: float = 50.0) -> PastAppointment:
    return PastAppointment(
        scheduled_for=NOW - timedelta(days=days_ago), status=status, service_price=price
    )


def _unreliable() -> list[PastAppointment]:
    return [_past(d, AppointmentStatus.NO_SHOW) for d in (10, 20, 30, 40)]


def _perfect() -> list[PastAppointment]:
    return [_past(30 * k, AppointmentStatus.COMPLETED, price=200.0) for k in range(1, 13)]


_ENGAGED = EngagementSnapshot(
    reminder_response_rate=0.9,
    message_response_minutes=30,
    reviews_submitted=2,
    self_service_usage=3,
    loyalty_participation=True,
)


class TestScoreClient:
    def setup_method(self) -> None:
        self.system = RiskScoringSystem(clock=lambda: NOW)

    def test_unreliable_client(self) -> None:
        profile = self.system.score_client(
            "CLI-1", _unreliable(), LoyaltySnapshot(), EngagementSnapshot()
        )

        assert profile.factors == ProfileFactors(
            reliability=20, engagement=35, recency=100, value=15, loyalty=50
        )
        # 100 - (80*.40 + 65*.25 + 0*.15 + 85*.10 + 50*.10) = 38.25
        assert profile.current_score == 38
        assert profile.risk_level == RiskLevel.LOW
        assert profile.trend == Trend.STABLE
        assert self.system.segment(profile).name == "Promising"

    def test_perfect_factors_score_full_marks(self) -> None:
        profile = self.system.score_client(
            "CLI-2", _perfect(), LoyaltySnapshot(points=500), _ENGAGED
        )

        assert profile.factors == ProfileFactors(100, 100, 100, 100, 100)
        assert profile.current_score == 100
        assert profile.risk_level == RiskLevel.CRITICAL
        assert self.system.segment(profile).name == "Critical"

    def test_rescoring_sets_trend(self) -> None:
        self.system.score_client("CLI-1", _perfect(), LoyaltySnapshot(points=500), _ENGAGED)
        lower = self.system.score_client(
            "CLI-1", _unreliable(), LoyaltySnapshot(), EngagementSnapshot()
        )
        assert lower.trend == Trend.IMPROVING
        assert self.system.get_profile("CLI-1") == lower

        higher = self.system.score_client(
            "CLI-1", _perfect(), LoyaltySnapshot(points=500), _ENGAGED
        )
        assert higher.trend == Trend.DECLINING

    def test_no_history_is_neutral(self) -> None:
        profile = self.system.score_client("CLI-3", [], LoyaltySnapshot(), EngagementSnapshot())
        assert profile.factors.reliability == 50
        assert profile.factors.recency == 50
        assert profile.factors.value == 50
        assert 0 <= profile.current_score <= 100

    def test_get_profile_unknown(self) -> None:
        assert self.system.get_profile("nobody") is None


class TestFactorFormulas:
    def test_factors_are_clamped(self) -> None:
        f = ProfileFactors(reliability=150, engagement=-10, recency=50, value=100, loyalty=0)
        assert f.reliability == 100
        assert f.engagement == 0

    @pytest.mark.parametrize(
        ("factors", "expected"),
        [
            (ProfileFactors(100, 100, 100, 100, 100), 100.0),
            (ProfileFactors(0, 0, 0, 0, 0), 0.0),
            # 100 - (50*.40 + 100*.25) = 55
            (ProfileFactors(50, 0, 100, 100, 100), 55.0),
        ],
    )
    def test_overall_score_inverts_weighted_shortfall(
        self, factors: ProfileFactors, expected: float
    ) -> None:
        assert RiskScoringSystem().overall_score(factors) == pytest.approx(expected)

    def test_short_history_penalised(self) -> None:
        two = [_past(5, AppointmentStatus.COMPLETED), _past(15, AppointmentStatus.COMPLETED)]
        # 100 + 10 (all completed) - 20 (fewer than three)
        assert RiskScoringSystem.reliability_score(two) == 90

    def test_cancellations_weigh_half_a_no_show(self) -> None:
        appts = [_past(d, AppointmentStatus.CANCELLED) for d in (1, 2, 3, 4)]
        assert RiskScoringSystem.reliability_score(appts) == 60

    @pytest.mark.parametrize(
        ("days_ago", "expected"),
        [(30, 100), (31, 80), (90, 60), (180, 40), (365, 20), (400, 10)],
    )
    def test_recency_bands(self, days_ago: int, expected: float) -> None:
        appts = [_past(days_ago, AppointmentStatus.COMPLETED)]
        assert RiskScoringSystem.recency_score(appts, NOW) == expected

    def test_recommendations_follow_weak_factors(self) -> None:
        system = RiskScoringSystem(clock=lambda: NOW)
        profile = system.score_client(
            "CLI-1", _unreliable(), LoyaltySnapshot(), EngagementSnapshot()
        )
        recs = RiskScoringSystem.generate_recommendations(profile)
        assert "Apply a double-confirmation policy" in recs
        assert "Increase contact frequency" in recs
        assert "Service upsell strategy" in recs
        assert "Personalised reactivation campaign" not in recs
        assert "Mandatory contact before booking" not in recs


class TestScoreEvents:
    def setup_method(self) -> None:
        self.system = RiskScoringSystem(clock=lambda: NOW)

    def test_unknown_client_starts_neutral(self) -> None:
        change = self.system.update_score_after_event("CLI-9", ScoreEvent.NO_SHOW)
        assert (change.old_score, change.new_score, change.change) == (50, 65, 15)

        profile = self.system.get_profile("CLI-9")
        assert profile is not None
        assert profile.trend == Trend.DECLINING
        assert profile.history[-1].event == ScoreEvent.NO_SHOW

    def test_change_is_clamped(self) -> None:
        for _ in range(3):
            self.system.update_score_after_event("CLI-9", "NO_SHOW")
        assert self.system.get_profile("CLI-9").current_score == 95  # type: ignore[union-attr]

        change = self.system.update_score_after_event("CLI-9", ScoreEvent.NO_SHOW)
        assert change.new_score == 100
        assert change.change == 5
        assert self.system.get_profile("CLI-9").risk_level == RiskLevel.CRITICAL  # type: ignore[union-attr]

    def test_good_events_lower_score(self) -> None:
        change = self.system.update_score_after_event("CLI-9", ScoreEvent.APPOINTMENT_COMPLETED)
        assert change.change == -5
        assert self.system.update_score_after_event("CLI-9", "PAYMENT").change == -3
        assert self.system.update_score_after_event("CLI-9", "ENGAGEMENT").change == -2

    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(ValueError):
            self.system.update_score_after_event("CLI-9", "BIRTHDAY")

    def test_history_is_bounded(self) -> None:
        system = RiskScoringSystem(history_limit=3, clock=lambda: NOW)
        for event in ("NO_SHOW", "CANCELLATION", "PAYMENT", "ENGAGEMENT", "NO_SHOW"):
            system.update_score_after_event("CLI-9", event)

        history = system.get_profile("CLI-9").history  # type: ignore[union-attr]
        assert [h.event for h in history] == [
            ScoreEvent.PAYMENT,
            ScoreEvent.ENGAGEMENT,
            ScoreEvent.NO_SHOW,
        ]

    def test_full_recompute_keeps_event_history(self) -> None:
        self.system.update_score_after_event("CLI-1", ScoreEvent.CANCELLATION)
        profile = self.system.score_client(
            "CLI-1", _unreliable(), LoyaltySnapshot(), EngagementSnapshot()
        )
        assert len(profile.history) == 1


class TestAggregates:
    def setup_method(self) -> None:
        self.system = RiskScoringSystem(clock=lambda: NOW)
        self.system.score_client("steady", _perfect(), LoyaltySnapshot(points=500), _ENGAGED)
        self.system.score_client("lapsed", _unreliable(), LoyaltySnapshot(), EngagementSnapshot())
        for _ in range(2):
            self.system.update_score_after_event("high", ScoreEvent.NO_SHOW)  # 80
        for _ in range(3):
            self.system.update_score_after_event("critical", ScoreEvent.NO_SHOW)  # 95

    def test_high_risk_clients_sorted(self) -> None:
        risky = self.system.high_risk_clients()
        assert [p.client_id for p in risky] == ["steady", "critical", "high"]
        assert [p.client_id for p in self.system.high_risk_clients(limit=1)] == ["steady"]

    def test_statistics(self) -> None:
        stats = self.system.risk_statistics()
        assert stats.total_clients == 4
        assert stats.risk_distribution == {"LOW": 1, "MEDIUM": 0, "HIGH": 1, "CRITICAL": 2}
        # (100 + 38 + 80 + 95) / 4
        assert stats.average_score == 78.25

    def test_statistics_empty(self) -> None:
        stats = RiskScoringSystem(clock=lambda: NOW).risk_statistics()
        assert stats.total_clients == 0
        assert stats.average_score == 0.0
