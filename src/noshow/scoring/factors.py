"""Factor extraction — normalised inputs for the no-show predictor.

Turns an appointment snapshot plus the client's aggregate history into the
flat set of numeric factors the sub-score formulas read. All calendar
arithmetic uses the wall-clock fields of the datetimes as given.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from noshow.domain import AppointmentSnapshot, ClientHistorySnapshot, RiskLevel, as_utc
from noshow.scoring.weights import DEFAULT_HOLIDAYS

__all__ = [
    "PredictionFactors",
    "days_between",
    "extract_factors",
    "holiday_proximity",
    "loyalty_level",
    "round_half_up",
    "seasonal_factor",
]

UNKNOWN_LAST_CONTACT_DAYS = 999


@dataclass(frozen=True)
class PredictionFactors:
    history: ClientHistorySnapshot
    client_risk_profile: RiskLevel

    advance_booking_days: int
    day_of_week: int  # Monday = 0
    time_of_day: float  # fractional hour
    is_weekend: bool
    service_value: float
    is_paid_in_advance: bool

    seasonal_factor: float
    holiday_proximity: float
    weather_risk: float | None

    reminders_sent: int
    last_contact_days: int
    loyalty_level: int


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days from *earlier* to *later*, truncated toward zero."""
    return int((as_utc(later) - as_utc(earlier)).total_seconds() / 86_400)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def seasonal_factor(when: datetime) -> float:
    """Post-holiday and festive months carry more no-shows."""
    if when.month in (1, 5, 12):
        return 0.8
    if when.month == 7:
        return 0.6
    return 0.2


def holiday_proximity(
    when: datetime,
    holidays: tuple[tuple[int, int], ...] = DEFAULT_HOLIDAYS,
) -> float:
    """1.0 on the eve/day/morrow of a holiday, 0.6 within three days."""
    best = 0.0
    for month, day in holidays:
        holiday = when.replace(month=month, day=day, hour=0, minute=0, second=0, microsecond=0)
        distance = abs(days_between(when, holiday))
        if distance <= 1:
            return 1.0
        if distance <= 3:
            best = 0.6
    return best


def loyalty_level(points: int) -> int:
    """Map loyalty points onto a 0–5 level."""
    for level, floor in ((5, 1000), (4, 500), (3, 200), (2, 100), (1, 50)):
        if points >= floor:
            return level
    return 0


def _client_risk_profile(history: ClientHistorySnapshot) -> RiskLevel:
    if history.total_appointments <= 0:
        return RiskLevel.MEDIUM
    if history.no_show_rate >= 0.3 or history.completion_rate < 0.6:
        return RiskLevel.HIGH
    if history.no_show_rate >= 0.1 or history.completion_rate < 0.8:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def extract_factors(
    appointment: AppointmentSnapshot,
    history: ClientHistorySnapshot,
    now: datetime,
    overrides: dict[str, Any] | None = None,
    holidays: tuple[tuple[int, int], ...] = DEFAULT_HOLIDAYS,
) -> PredictionFactors:
    """Derive the predictor factors for one appointment.

    *overrides* replaces any derived field by name (external signals such
    as ``weather_risk`` or a known ``holiday_proximity``); unknown names
    are ignored.
    """
    when = appointment.scheduled_for
    if history.last_appointment_date is not None:
        last_contact = days_between(now, history.last_appointment_date)
    else:
        last_contact = UNKNOWN_LAST_CONTACT_DAYS

    factors = PredictionFactors(
        history=history,
        client_risk_profile=_client_risk_profile(history),
        advance_booking_days=days_between(when, appointment.created_at),
        day_of_week=when.weekday(),
        time_of_day=when.hour + when.minute / 60,
        is_weekend=when.weekday() >= 5,
        service_value=max(0.0, appointment.service_price),
        is_paid_in_advance=appointment.is_paid_in_advance,
        seasonal_factor=seasonal_factor(when),
        holiday_proximity=holiday_proximity(when, holidays),
        weather_risk=None,
        reminders_sent=max(0, appointment.reminders_sent),
        last_contact_days=last_contact,
        loyalty_level=loyalty_level(history.loyalty_points),
    )
    if overrides:
        known = {f.name for f in dataclasses.fields(PredictionFactors)}
        factors = dataclasses.replace(
            factors, **{k: v for k, v in overrides.items() if k in known}
        )
    return factors
