"""No-op channel sender — logs sends without executing them."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from noshow.domain import ChannelType, Clock, utc_now
from noshow.interventions.dispatcher import ActionStatus, SendReport

__all__ = ["NoopChannelSender", "SentMessage"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentMessage:
    channel: ChannelType
    recipient: str
    message: str
    parameters: dict[str, Any]


class NoopChannelSender:
    """Accepts every send and keeps it in ``sent``. For dev and tests."""

    def __init__(self, timeout_seconds: float = 10.0, clock: Clock = utc_now) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.sent: list[SentMessage] = []

    async def send(
        self,
        channel: ChannelType,
        recipient: str,
        message: str,
        parameters: dict[str, Any],
    ) -> SendReport:
        self.sent.append(SentMessage(channel, recipient, message, dict(parameters)))
        logger.info(
            "[NOOP] Would send %s to %s (appointment=%s)",
            channel,
            recipient,
            parameters.get("appointment_id"),
        )
        return SendReport(
            status=ActionStatus.SENT,
            sent_at=self._clock(),
            provider_message_id=f"noop-{uuid.uuid4().hex[:12]}",
        )
