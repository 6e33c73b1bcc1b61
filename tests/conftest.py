"""Shared fixtures: a controllable clock and appointment/client builders."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest

from noshow.domain import (
    AppointmentContext,
    AppointmentSnapshot,
    Client,
    ClientHistorySnapshot,
    PaymentStatus,
    Professional,
)
from noshow.settings import Settings

from fakes import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        environment="dev",
        log_json=False,
        pg_dsn="",
        twilio_enabled=False,
        channel_webhook_url="",
        rules_path="",
    )


@pytest.fixture()
def sample_client() -> Client:
    return Client(
        id="CLI-001",
        name="Maria Silva",
        phone="+5511988887777",
        email="maria@example.com",
        loyalty_points=0,
    )


@pytest.fixture()
def sample_professional() -> Professional:
    return Professional(
        id="PRO-001",
        name="Ana Costa",
        business_name="Studio Bella",
        phone="(11) 3333-4444",
        address="Rua das Flores, 123",
    )


@pytest.fixture()
def make_appointment(clock: FakeClock) -> Callable[..., AppointmentSnapshot]:
    """Build an appointment *hours_ahead* of the clock, booked right now."""

    def _make(hours_ahead: float = 30, **overrides: Any) -> AppointmentSnapshot:
        fields: dict[str, Any] = {
            "id": "APT-100",
            "client_id": "CLI-001",
            "scheduled_for": clock.now + timedelta(hours=hours_ahead),
            "created_at": clock.now,
            "service_price": 85.0,
            "payment_status": PaymentStatus.PENDING,
            "service_name": "Cut + Blow-dry",
        }
        fields.update(overrides)
        return AppointmentSnapshot(**fields)

    return _make


@pytest.fixture()
def make_context(
    make_appointment: Callable[..., AppointmentSnapshot],
    sample_client: Client,
    sample_professional: Professional,
) -> Callable[..., AppointmentContext]:
    def _make(
        hours_ahead: float = 30,
        history: ClientHistorySnapshot | None = None,
        **overrides: Any,
    ) -> AppointmentContext:
        appointment = make_appointment(hours_ahead, **overrides)
        return AppointmentContext(
            appointment=appointment,
            history=history or ClientHistorySnapshot(client_id=appointment.client_id),
            client=sample_client,
            professional=sample_professional,
        )

    return _make


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"
