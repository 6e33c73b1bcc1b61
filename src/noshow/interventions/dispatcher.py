"""Action dispatcher — hands rendered actions to channel senders.

Every dispatch attempt yields exactly one ``ActionOutcome``. Timeouts,
sender exceptions, a missing sender or recipient, and negative reports are
all recorded as FAILED with an error string; nothing escapes ``dispatch``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

from noshow.domain import AppointmentSnapshot, ChannelType, Client, Clock, utc_now
from noshow.interventions.rules import ExecutionTiming, InterventionAction

__all__ = [
    "ActionDispatcher",
    "ActionOutcome",
    "ActionStatus",
    "ChannelSender",
    "SendReport",
    "payment_amount",
]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class ActionStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RESPONDED = "RESPONDED"

    @property
    def succeeded(self) -> bool:
        return self in (ActionStatus.SENT, ActionStatus.DELIVERED, ActionStatus.RESPONDED)


@dataclass(frozen=True)
class SendReport:
    """What a channel sender reports back for one send call."""

    status: ActionStatus
    sent_at: datetime | None = None
    provider_message_id: str = ""
    error: str = ""


@dataclass(frozen=True)
class ActionOutcome:
    channel: ChannelType
    template_id: str
    status: ActionStatus
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    provider_message_id: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "channel": str(self.channel),
            "template_id": self.template_id,
            "status": str(self.status),
        }
        if self.scheduled_for:
            d["scheduled_for"] = self.scheduled_for.isoformat()
        if self.sent_at:
            d["sent_at"] = self.sent_at.isoformat()
        if self.provider_message_id:
            d["provider_message_id"] = self.provider_message_id
        if self.error:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ActionOutcome:
        return cls(
            channel=ChannelType(data["channel"]),
            template_id=data.get("template_id", ""),
            status=ActionStatus(data["status"]),
            scheduled_for=_parse_dt(data.get("scheduled_for")),
            sent_at=_parse_dt(data.get("sent_at")),
            provider_message_id=data.get("provider_message_id", ""),
            error=data.get("error", ""),
        )


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ChannelSender(Protocol):
    """Transport for one or more channel kinds."""

    timeout_seconds: float

    async def send(
        self,
        channel: ChannelType,
        recipient: str,
        message: str,
        parameters: dict[str, Any],
    ) -> SendReport:
        """Send *message*; report failure instead of raising."""
        ...


def payment_amount(action: InterventionAction, appointment: AppointmentSnapshot) -> float:
    """Requested prepayment: service price × percentage / 100."""
    percentage = float(action.parameters.get("percentage", 100))
    return round(max(0.0, appointment.service_price) * percentage / 100, 2)


class ActionDispatcher:
    """Routes each action to the sender registered for its channel."""

    def __init__(
        self,
        senders: Mapping[ChannelType, ChannelSender],
        clock: Clock = utc_now,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._senders = dict(senders)
        self._clock = clock
        self._default_timeout = default_timeout

    @staticmethod
    def recipient_for(
        channel: ChannelType,
        appointment: AppointmentSnapshot,
        client: Client,
    ) -> str:
        if channel in (ChannelType.WHATSAPP, ChannelType.SMS, ChannelType.PHONE_CALL):
            return client.phone
        if channel == ChannelType.EMAIL:
            return client.email
        if channel == ChannelType.INCENTIVE_OFFER:
            return client.id
        # payment and confirmation requests are bound to the appointment
        return appointment.id

    def scheduled_for(
        self,
        action: InterventionAction,
        appointment: AppointmentSnapshot,
        now: datetime,
    ) -> datetime:
        """Absolute send time for *action*, never earlier than *now*."""
        delay = timedelta(minutes=max(0, action.delay_minutes))
        if action.execute_at == ExecutionTiming.HOURS_BEFORE and action.timing is not None:
            target = appointment.scheduled_for - timedelta(hours=action.timing) + delay
        elif action.execute_at == ExecutionTiming.SPECIFIC_TIME and action.timing is not None:
            day = appointment.scheduled_for.replace(hour=0, minute=0, second=0, microsecond=0)
            target = day + timedelta(hours=action.timing) + delay
        else:
            target = now + delay
        return max(now, target)

    async def dispatch(
        self,
        action: InterventionAction,
        appointment: AppointmentSnapshot,
        client: Client,
        message: str,
        subject: str = "",
    ) -> ActionOutcome:
        now = self._clock()
        when = self.scheduled_for(action, appointment, now)

        def failed(error: str) -> ActionOutcome:
            logger.warning(
                "Action %s/%s failed for appointment %s: %s",
                action.channel,
                action.template_id,
                appointment.id,
                error,
            )
            return ActionOutcome(
                channel=action.channel,
                template_id=action.template_id,
                status=ActionStatus.FAILED,
                scheduled_for=when,
                error=error,
            )

        sender = self._senders.get(action.channel)
        if sender is None:
            return failed(f"no sender registered for {action.channel}")

        recipient = self.recipient_for(action.channel, appointment, client)
        if not recipient:
            return failed(f"client {client.id} has no recipient for {action.channel}")

        parameters: dict[str, Any] = {
            **action.parameters,
            "appointment_id": appointment.id,
            "client_id": client.id,
            "template_id": action.template_id,
            "scheduled_for": when.isoformat(),
        }
        if subject:
            parameters["subject"] = subject
        if action.channel == ChannelType.PAYMENT_REQUEST:
            parameters["amount"] = payment_amount(action, appointment)

        timeout = getattr(sender, "timeout_seconds", None) or self._default_timeout
        try:
            report = await asyncio.wait_for(
                sender.send(action.channel, recipient, message, parameters),
                timeout=timeout,
            )
        except TimeoutError:
            return failed(f"timed out after {timeout:g}s")
        except Exception as exc:
            return failed(f"{type(exc).__name__}: {exc}"[:200])

        if not report.status.succeeded and report.status != ActionStatus.PENDING:
            return failed(report.error or "rejected by channel")

        # an accepted-but-queued report still counts as sent from here
        status = ActionStatus.SENT if report.status == ActionStatus.PENDING else report.status
        logger.info(
            "Action %s/%s %s for appointment %s (id=%s)",
            action.channel,
            action.template_id,
            status,
            appointment.id,
            report.provider_message_id or "-",
        )
        return ActionOutcome(
            channel=action.channel,
            template_id=action.template_id,
            status=status,
            scheduled_for=when,
            sent_at=report.sent_at or now,
            provider_message_id=report.provider_message_id,
        )
