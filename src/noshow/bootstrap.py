"""Composition root — builds a ready Orchestrator from settings."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from noshow.adapters.noop import NoopChannelSender
from noshow.domain import ChannelType, Clock, utc_now
from noshow.interventions.dispatcher import ActionDispatcher, ChannelSender
from noshow.interventions.engine import InterventionEngine, MessageDefaults
from noshow.interventions.rules import DEFAULT_RULES, RuleSet, load_rules
from noshow.interventions.templates import TemplateRenderer
from noshow.logging import configure_logging
from noshow.orchestration.orchestrator import Orchestrator
from noshow.scoring.predictor import NoShowPredictor
from noshow.scoring.risk_profile import RiskScoringSystem
from noshow.settings import Settings
from noshow.storage.record_store import InMemoryRecordStore, RecordStoreProtocol

__all__ = ["build_orchestrator", "build_senders"]

logger = logging.getLogger(__name__)

_TWILIO_CHANNELS = (ChannelType.SMS, ChannelType.WHATSAPP, ChannelType.PHONE_CALL)
_WEBHOOK_CHANNELS = (
    ChannelType.EMAIL,
    ChannelType.PAYMENT_REQUEST,
    ChannelType.INCENTIVE_OFFER,
    ChannelType.CONFIRMATION_REQUIRED,
)


def build_senders(settings: Settings, clock: Clock = utc_now) -> dict[ChannelType, ChannelSender]:
    """One sender per channel; channels without a configured provider get a noop."""
    noop = NoopChannelSender(timeout_seconds=settings.dispatch_timeout_seconds, clock=clock)
    senders: dict[ChannelType, ChannelSender] = {channel: noop for channel in ChannelType}

    if settings.twilio_enabled and settings.twilio_account_sid:
        from noshow.adapters.twilio_sms import TwilioChannelSender

        twilio = TwilioChannelSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            whatsapp_from=settings.twilio_whatsapp_from,
            timeout_seconds=settings.dispatch_timeout_seconds,
            clock=clock,
        )
        senders.update({channel: twilio for channel in _TWILIO_CHANNELS})
    else:
        logger.info("Twilio disabled, SMS/WhatsApp/calls go to the noop sender")

    if settings.channel_webhook_url:
        from noshow.adapters.webhook import WebhookChannelSender

        webhook = WebhookChannelSender(
            url=settings.channel_webhook_url,
            token=settings.channel_webhook_token,
            timeout_seconds=settings.dispatch_timeout_seconds,
            clock=clock,
        )
        senders.update({channel: webhook for channel in _WEBHOOK_CHANNELS})

    return senders


def build_orchestrator(
    settings: Settings | None = None,
    record_store: RecordStoreProtocol | None = None,
    senders: Mapping[ChannelType, ChannelSender] | None = None,
    clock: Clock = utc_now,
) -> Orchestrator:
    """Wire every component. Raises RuleConfigError for a bad rules file."""
    settings = settings or Settings()
    configure_logging(json_output=settings.log_json, level=settings.log_level)

    if record_store is None:
        if settings.pg_dsn:
            from noshow.storage.postgres import open_record_store

            record_store = open_record_store(settings)
        else:
            logger.warning("NOSHOW_PG_DSN not set, using the in-memory record store")
            record_store = InMemoryRecordStore()

    rules = load_rules(settings.rules_path) if settings.rules_path else DEFAULT_RULES
    engine = InterventionEngine(
        rules=RuleSet(rules),
        renderer=TemplateRenderer(),
        dispatcher=ActionDispatcher(
            senders if senders is not None else build_senders(settings, clock),
            clock=clock,
            default_timeout=settings.dispatch_timeout_seconds,
        ),
        record_store=record_store,
        defaults=MessageDefaults.from_settings(settings),
        clock=clock,
    )
    return Orchestrator(
        settings=settings,
        record_store=record_store,
        predictor=NoShowPredictor(clock=clock),
        scoring=RiskScoringSystem(history_limit=settings.profile_history_limit, clock=clock),
        engine=engine,
        clock=clock,
    )
