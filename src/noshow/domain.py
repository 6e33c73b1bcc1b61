"""Shared domain types: enums, input snapshots and collaborator records."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

__all__ = [
    "AppointmentContext",
    "AppointmentSnapshot",
    "AppointmentStatus",
    "ChannelType",
    "Client",
    "ClientHistorySnapshot",
    "Clock",
    "EngagementSnapshot",
    "LoyaltySnapshot",
    "Notification",
    "PastAppointment",
    "PaymentStatus",
    "Professional",
    "RiskLevel",
    "as_utc",
    "utc_now",
]


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (e.g. Postgres TIMESTAMP columns) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AppointmentStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CONFIRMATION_PENDING = "CONFIRMATION_PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class ChannelType(StrEnum):
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    EMAIL = "EMAIL"
    PHONE_CALL = "PHONE_CALL"
    PAYMENT_REQUEST = "PAYMENT_REQUEST"
    INCENTIVE_OFFER = "INCENTIVE_OFFER"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"


# ---------------------------------------------------------------------------
# Scoring inputs (immutable, never mutated by this package)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AppointmentSnapshot:
    """Appointment as seen at scoring time."""

    id: str
    client_id: str
    scheduled_for: datetime
    created_at: datetime
    service_price: float = 0.0
    service_duration: int = 60  # minutes
    payment_status: PaymentStatus = PaymentStatus.PENDING
    reminders_sent: int = 0
    is_first_time: bool = False
    service_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "scheduled_for", as_utc(self.scheduled_for))
        object.__setattr__(self, "created_at", as_utc(self.created_at))

    @property
    def is_paid_in_advance(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED


@dataclass(frozen=True)
class ClientHistorySnapshot:
    """Aggregate of a client's past appointments, recomputed by the store."""

    client_id: str
    total_appointments: int = 0
    completed_count: int = 0
    no_show_count: int = 0
    cancel_count: int = 0
    average_advance_booking_days: float = 0.0
    average_service_value: float = 0.0
    loyalty_points: int = 0
    last_appointment_date: datetime | None = None

    def __post_init__(self) -> None:
        if self.last_appointment_date is not None:
            object.__setattr__(self, "last_appointment_date", as_utc(self.last_appointment_date))

    def rate(self, count: int) -> float:
        """Share of total appointments; 0.0 when there is no history."""
        if self.total_appointments <= 0:
            return 0.0
        return max(0, count) / self.total_appointments

    @property
    def no_show_rate(self) -> float:
        return self.rate(self.no_show_count)

    @property
    def cancel_rate(self) -> float:
        return self.rate(self.cancel_count)

    @property
    def completion_rate(self) -> float:
        return self.rate(self.completed_count)


# ---------------------------------------------------------------------------
# Records owned by the external store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Client:
    id: str
    name: str
    phone: str = ""
    email: str = ""
    loyalty_points: int = 0


@dataclass(frozen=True)
class Professional:
    id: str
    name: str
    business_name: str = ""
    phone: str = ""
    address: str = ""


@dataclass(frozen=True)
class PastAppointment:
    """One historical appointment, used for longitudinal profile factors."""

    scheduled_for: datetime
    status: AppointmentStatus
    service_price: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "scheduled_for", as_utc(self.scheduled_for))


@dataclass(frozen=True)
class LoyaltySnapshot:
    points: int = 0


@dataclass(frozen=True)
class EngagementSnapshot:
    """Communication signals; unknown values are left as None."""

    reminder_response_rate: float = 0.0
    message_response_minutes: float | None = None
    reviews_submitted: int = 0
    self_service_usage: int = 0
    loyalty_participation: bool = False


@dataclass(frozen=True)
class AppointmentContext:
    """Everything the entry point needs for one appointment id."""

    appointment: AppointmentSnapshot
    history: ClientHistorySnapshot
    client: Client
    professional: Professional
    past_appointments: tuple[PastAppointment, ...] = ()
    engagement: EngagementSnapshot = field(default_factory=EngagementSnapshot)


@dataclass(frozen=True)
class Notification:
    """Operator-facing notice written to the store (e.g. a client replied)."""

    id: str
    client_id: str
    appointment_id: str
    kind: str
    title: str
    message: str
    created_at: datetime
