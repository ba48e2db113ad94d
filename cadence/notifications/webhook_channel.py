"""Incoming-webhook implementation of the NotificationChannel protocol."""

from __future__ import annotations

import logging

import aiohttp

from cadence.config import settings

logger = logging.getLogger(__name__)

# Incoming webhooks (Slack and compatible) reject very long bodies.
MAX_MESSAGE_LENGTH = 3000


class WebhookChannel:
    """Posts ``{"text": ..., "scope": ...}`` to an incoming-webhook URL."""

    def __init__(self, url: str | None = None, channel_name: str = "webhook") -> None:
        self._url = url if url is not None else settings.failure_webhook_url
        self._name = channel_name
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return self._name

    def _get_session(self) -> aiohttp.ClientSession:
        """Return (and lazily create) the shared aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def send(self, scope: str, message: str) -> bool:
        """Post a message. Returns True on a 2xx response."""
        if not self._url:
            logger.error("Webhook channel not configured — missing FAILURE_WEBHOOK_URL")
            return False

        if len(message) > MAX_MESSAGE_LENGTH:
            message = message[: MAX_MESSAGE_LENGTH - 3] + "..."

        session = self._get_session()
        try:
            async with session.post(self._url, json={"text": message, "scope": scope}) as resp:
                if 200 <= resp.status < 300:
                    logger.info(
                        "Webhook notification sent (scope=%s, %d chars)", scope, len(message)
                    )
                    return True
                text = await resp.text()
                logger.error(
                    "Webhook notification failed: status=%d body=%s", resp.status, text[:200]
                )
                return False
        except aiohttp.ClientError:
            logger.exception("Webhook notification failed (network error)")
            return False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
