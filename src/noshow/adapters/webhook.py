"""Webhook channel sender — POSTs actions to an external delivery service.

Used for the channels this package does not deliver itself (email,
payment requests, incentives, confirmation requirements).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from noshow.domain import ChannelType, Clock, utc_now
from noshow.interventions.dispatcher import ActionStatus, SendReport

__all__ = ["WebhookChannelSender"]

logger = logging.getLogger(__name__)


class WebhookChannelSender:
    """Delivers actions as JSON to ``url``; any 2xx response counts as sent."""

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._url = url
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(
        self,
        channel: ChannelType,
        recipient: str,
        message: str,
        parameters: dict[str, Any],
    ) -> SendReport:
        payload = {
            "channel": str(channel),
            "recipient": recipient,
            "message": message,
            "parameters": parameters,
        }
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.error("Webhook %s delivery failed: %s", channel, exc)
            return SendReport(status=ActionStatus.FAILED, error=f"{type(exc).__name__}: {exc}"[:200])

        if response.is_success:
            provider_id = ""
            try:
                provider_id = str(response.json().get("id", ""))
            except (ValueError, AttributeError):
                pass  # body is optional
            return SendReport(
                status=ActionStatus.SENT, sent_at=self._clock(), provider_message_id=provider_id
            )

        logger.warning("Webhook %s rejected: HTTP %d", channel, response.status_code)
        return SendReport(
            status=ActionStatus.FAILED,
            error=f"HTTP {response.status_code}: {response.text[:150]}",
        )

    async def close(self) -> None:
        await self._client.aclose()
