"""Tests for wiring the orchestrator from settings."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import structlog

from noshow.adapters.noop import NoopChannelSender
from noshow.adapters.twilio_sms import TwilioChannelSender
from noshow.adapters.webhook import WebhookChannelSender
from noshow.bootstrap import build_orchestrator, build_senders
from noshow.domain import ChannelType
from noshow.errors import RuleConfigError
from noshow.settings import Settings
from noshow.storage.record_store import InMemoryRecordStore


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


class TestBuildSenders:
    def test_everything_noop_by_default(self, test_settings: Settings) -> None:
        senders = build_senders(test_settings)
        assert set(senders) == set(ChannelType)
        assert all(isinstance(s, NoopChannelSender) for s in senders.values())

    def test_twilio_and_webhook(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={
                "twilio_enabled": True,
                "twilio_account_sid": "ACtest",
                "channel_webhook_url": "https://delivery.example.com/actions",
            }
        )

        senders = build_senders(settings)

        for channel in (ChannelType.SMS, ChannelType.WHATSAPP, ChannelType.PHONE_CALL):
            assert isinstance(senders[channel], TwilioChannelSender)
        for channel in (
            ChannelType.EMAIL,
            ChannelType.PAYMENT_REQUEST,
            ChannelType.INCENTIVE_OFFER,
            ChannelType.CONFIRMATION_REQUIRED,
        ):
            assert isinstance(senders[channel], WebhookChannelSender)

    def test_twilio_needs_credentials(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"twilio_enabled": True})
        assert isinstance(build_senders(settings)[ChannelType.SMS], NoopChannelSender)


class TestBuildOrchestrator:
    def test_defaults_to_in_memory_store(self, test_settings: Settings) -> None:
        orch = build_orchestrator(test_settings)
        assert len(orch.engine.active_rules()) == 5

    def test_rules_file(self, test_settings: Settings, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps(
                {
                    "rules": [
                        {
                            "id": "only_rule",
                            "name": "Only",
                            "conditions": {"risk_levels": ["LOW"]},
                            "actions": [],
                            "priority": 1,
                        }
                    ]
                }
            ),
            encoding="utf-8",
        )
        settings = test_settings.model_copy(update={"rules_path": str(path)})

        orch = build_orchestrator(settings, record_store=InMemoryRecordStore())

        assert [r.id for r in orch.engine.active_rules()] == ["only_rule"]

    def test_bad_rules_file(self, test_settings: Settings, tmp_path: Path) -> None:
        settings = test_settings.model_copy(update={"rules_path": str(tmp_path / "missing.json")})
        with pytest.raises(RuleConfigError):
            build_orchestrator(settings)

    def test_postgres_when_dsn_set(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"pg_dsn": "postgresql://db/noshow"})
        pg_store = MagicMock()
        with patch("noshow.storage.postgres.open_record_store", return_value=pg_store) as opener:
            build_orchestrator(settings)
        opener.assert_called_once_with(settings)
