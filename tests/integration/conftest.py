"""Shared fixtures for integration tests.

These tests exercise the real pipeline end-to-end:
    snapshots → prediction → profile → rule selection → execution → replies

No mocks on internal components. Channel delivery goes to the noop
sender and the record store is the in-memory one, so runs are
deterministic.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from noshow.adapters.noop import NoopChannelSender
from noshow.bootstrap import build_orchestrator
from noshow.domain import (
    AppointmentContext,
    AppointmentSnapshot,
    AppointmentStatus,
    ChannelType,
    Client,
    ClientHistorySnapshot,
    PastAppointment,
    PaymentStatus,
    Professional,
)
from noshow.orchestration.orchestrator import Orchestrator
from noshow.settings import Settings
from noshow.storage.record_store import InMemoryRecordStore

from fakes import NOW, FakeClock

STUDIO = Professional(
    id="PRO-001",
    name="Ana Costa",
    business_name="Studio Bella",
    phone="(11) 3333-4444",
    address="Rua das Flores, 123",
)


# ── Appointment fixtures ────────────────────────────────────


def habitual_no_show() -> AppointmentContext:
    """Ten straight no-shows, booked yesterday for tomorrow evening, unpaid."""
    past = tuple(
        PastAppointment(NOW - timedelta(days=120 + 10 * k), AppointmentStatus.NO_SHOW, 40.0)
        for k in range(10)
    )
    return AppointmentContext(
        appointment=AppointmentSnapshot(
            id="APT-200",
            client_id="CLI-200",
            scheduled_for=NOW + timedelta(hours=34),  # Wednesday 19:00
            created_at=NOW,
            service_price=40.0,
            payment_status=PaymentStatus.PENDING,
            service_name="Manicure",
        ),
        history=ClientHistorySnapshot(
            client_id="CLI-200",
            total_appointments=10,
            no_show_count=10,
            last_appointment_date=NOW - timedelta(days=120),
        ),
        client=Client(
            id="CLI-200", name="Joana Lima", phone="+5511977776666", email="joana@example.com"
        ),
        professional=STUDIO,
        past_appointments=past,
    )


def reliable_regular() -> AppointmentContext:
    """Ten completed visits, prepaid, a loyal client."""
    past = tuple(
        PastAppointment(NOW - timedelta(days=20 + 30 * k), AppointmentStatus.COMPLETED, 120.0)
        for k in range(10)
    )
    return AppointmentContext(
        appointment=AppointmentSnapshot(
            id="APT-300",
            client_id="CLI-300",
            scheduled_for=NOW + timedelta(hours=30),  # Wednesday 15:00
            created_at=NOW,
            service_price=120.0,
            payment_status=PaymentStatus.COMPLETED,
            service_name="Colour",
        ),
        history=ClientHistorySnapshot(
            client_id="CLI-300",
            total_appointments=10,
            completed_count=10,
            loyalty_points=250,
            last_appointment_date=NOW - timedelta(days=20),
        ),
        client=Client(
            id="CLI-300",
            name="Carla Souza",
            phone="+5511955554444",
            email="carla@example.com",
            loyalty_points=250,
        ),
        professional=STUDIO,
        past_appointments=past,
    )


# ── Pipeline ────────────────────────────────────────────────


@pytest.fixture()
def integration_settings() -> Settings:
    return Settings(
        environment="dev",
        log_json=False,
        pg_dsn="",
        rules_path="",
        twilio_enabled=False,
        channel_webhook_url="",
    )


@pytest.fixture()
def record_store() -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    store.add_context(habitual_no_show())
    store.add_context(reliable_regular())
    return store


@pytest.fixture()
def outbox(clock: FakeClock) -> NoopChannelSender:
    return NoopChannelSender(clock=clock)


@pytest.fixture()
def orchestrator(
    integration_settings: Settings,
    record_store: InMemoryRecordStore,
    outbox: NoopChannelSender,
    clock: FakeClock,
) -> Orchestrator:
    return build_orchestrator(
        integration_settings,
        record_store=record_store,
        senders={channel: outbox for channel in ChannelType},
        clock=clock,
    )
