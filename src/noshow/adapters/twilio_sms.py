"""Twilio channel sender — SMS, WhatsApp and voice calls when enabled."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from xml.sax.saxutils import escape

from noshow.domain import ChannelType, Clock, utc_now
from noshow.interventions.dispatcher import ActionStatus, SendReport

__all__ = ["TwilioChannelSender"]

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = frozenset({ChannelType.SMS, ChannelType.WHATSAPP, ChannelType.PHONE_CALL})


def _mask(number: str) -> str:
    return number[:6] + "***"


class TwilioChannelSender:
    """Sender using the Twilio REST API.

    Only instantiated when NOSHOW_TWILIO_ENABLED=true and credentials
    are provided. Otherwise bootstrap falls back to NoopChannelSender.
    The Twilio client is synchronous, so calls run in a worker thread.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        whatsapp_from: str = "",
        timeout_seconds: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._whatsapp_from = whatsapp_from or from_number
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        # Lazy import, twilio is an optional dependency
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from twilio.rest import Client  # type: ignore[import-untyped,import-not-found]

            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    async def send(
        self,
        channel: ChannelType,
        recipient: str,
        message: str,
        parameters: dict[str, Any],
    ) -> SendReport:
        if channel not in SUPPORTED_CHANNELS:
            return SendReport(status=ActionStatus.FAILED, error=f"unsupported channel {channel}")
        if not recipient or not message:
            return SendReport(
                status=ActionStatus.FAILED, error="recipient and message are required"
            )

        try:
            sid = await asyncio.to_thread(self._create, channel, recipient, message)
        except Exception as exc:
            error_msg = str(exc)
            logger.error(
                "Twilio %s failed: %s (appointment=%s)",
                channel,
                error_msg,
                parameters.get("appointment_id"),
            )
            return SendReport(status=ActionStatus.FAILED, error=error_msg[:200])

        logger.info(
            "Twilio %s sent: sid=%s to=%s appointment=%s",
            channel,
            sid,
            _mask(recipient),
            parameters.get("appointment_id"),
        )
        return SendReport(
            status=ActionStatus.SENT, sent_at=self._clock(), provider_message_id=sid
        )

    def _create(self, channel: ChannelType, recipient: str, message: str) -> str:
        client = self._get_client()
        if channel == ChannelType.PHONE_CALL:
            call = client.calls.create(
                twiml=f"<Response><Say>{escape(message)}</Say></Response>",
                from_=self._from_number,
                to=recipient,
            )
            return str(call.sid)
        if channel == ChannelType.WHATSAPP:
            created = client.messages.create(
                body=message,
                from_=f"whatsapp:{self._whatsapp_from}",
                to=f"whatsapp:{recipient}",
            )
            return str(created.sid)
        created = client.messages.create(body=message, from_=self._from_number, to=recipient)
        return str(created.sid)
