"""FailureNotifier — fans task failure notices out to the configured channels."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cadence.notifications.channels import NotificationChannel

logger = logging.getLogger(__name__)


class FailureNotifier:
    """Delivers each notice to every channel it was built with.

    A channel that raises or reports a failed delivery does not stop the
    others. Each app builds its own instance.
    """

    def __init__(self, channels: Iterable[NotificationChannel] = ()) -> None:
        self._channels = list(channels)
        names = self.channel_names
        if len(set(names)) != len(names):
            msg = f"Duplicate notification channel names: {names}"
            raise ValueError(msg)

    @property
    def channel_names(self) -> list[str]:
        return [ch.name for ch in self._channels]

    async def send(self, scope: str, message: str) -> bool:
        """Send *message* for *scope* on all channels. True if any delivered it."""
        if not self._channels:
            logger.debug("No notification channels configured; dropping notice for %s", scope)
            return False

        results = await asyncio.gather(
            *(ch.send(scope, message) for ch in self._channels),
            return_exceptions=True,
        )
        delivered = False
        for ch, result in zip(self._channels, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Notification channel %s raised", ch.name, exc_info=result)
            elif result:
                delivered = True
            else:
                logger.warning(
                    "Notification channel %s did not deliver notice for %s", ch.name, scope
                )
        return delivered

    async def close(self) -> None:
        for ch in self._channels:
            await ch.close()
