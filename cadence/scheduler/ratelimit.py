"""Per-subject sliding-window rate limiting for scheduling operations.

Counters are process-local. Several scheduler processes each enforce the
limits independently.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass

from cadence.config import settings
from cadence.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0
DAY = 86400.0

# Chance that a single check also sweeps idle subjects.
CLEANUP_PROBABILITY = 0.01


@dataclass(frozen=True)
class RateLimitResult:
    """Quota left in each tier after a successful check."""

    minute: int
    hour: int
    day: int


@dataclass(frozen=True)
class WindowStats:
    used: int
    limit: int
    reset_in: float


class RateLimiter:
    """Three-tier (minute, hour, day) sliding-window counter.

    Args:
        max_per_minute: Threshold for the one-minute window.
        max_per_hour: Threshold for the one-hour window.
        max_per_day: Threshold for the one-day window.
        clock: Returns the current time in seconds (``time.time`` by default).
        rng: Returns a float in ``[0, 1)`` for the cleanup draw.
    """

    def __init__(
        self,
        max_per_minute: int = 60,
        max_per_hour: int = 1000,
        max_per_day: int = 10000,
        *,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self.max_per_day = max_per_day
        self._clock = clock
        self._rng = rng
        self._requests: dict[str, list[float]] = {}

    @staticmethod
    def _key(subject: str, operation: str) -> str:
        return f"{subject}:{operation}"

    def check_limit(self, subject: str, operation: str = "default") -> RateLimitResult:
        """Record one attempt for *subject*/*operation* if every tier has room.

        Raises:
            RateLimitExceeded: If a tier has already reached its threshold.
                Nothing is recorded in that case.
        """
        key = self._key(subject, operation)
        now = self._clock()
        recent = [ts for ts in self._requests.get(key, []) if ts > now - DAY]

        last_minute = sum(1 for ts in recent if ts > now - MINUTE)
        last_hour = sum(1 for ts in recent if ts > now - HOUR)
        last_day = len(recent)

        for window, count, limit in (
            ("minute", last_minute, self.max_per_minute),
            ("hour", last_hour, self.max_per_hour),
            ("day", last_day, self.max_per_day),
        ):
            if count >= limit:
                self._requests[key] = recent
                logger.warning(
                    "Rate limit hit: %s (%s) %d/%d per %s", subject, operation, count, limit, window
                )
                raise RateLimitExceeded(window, limit, count)

        recent.append(now)
        self._requests[key] = recent

        if self._rng() < CLEANUP_PROBABILITY:
            self.cleanup()

        return RateLimitResult(
            minute=self.max_per_minute - last_minute - 1,
            hour=self.max_per_hour - last_hour - 1,
            day=self.max_per_day - last_day - 1,
        )

    def cleanup(self) -> None:
        """Drop timestamps older than a day and forget idle subjects."""
        cutoff = self._clock() - DAY
        for key in list(self._requests):
            recent = [ts for ts in self._requests[key] if ts > cutoff]
            if recent:
                self._requests[key] = recent
            else:
                del self._requests[key]

    def reset(self, subject: str, operation: str | None = None) -> None:
        """Clear one operation's counters, or every counter for *subject*."""
        if operation is not None:
            self._requests.pop(self._key(subject, operation), None)
            return
        prefix = f"{subject}:"
        for key in [k for k in self._requests if k.startswith(prefix)]:
            del self._requests[key]

    def get_stats(self, subject: str, operation: str = "default") -> dict[str, WindowStats]:
        """Current usage per tier, with seconds until the oldest entry expires."""
        timestamps = self._requests.get(self._key(subject, operation), [])
        now = self._clock()
        stats: dict[str, WindowStats] = {}
        for window, span, limit in (
            ("minute", MINUTE, self.max_per_minute),
            ("hour", HOUR, self.max_per_hour),
            ("day", DAY, self.max_per_day),
        ):
            inside = [ts for ts in timestamps if ts > now - span]
            reset_in = span - (now - min(inside)) if inside else 0.0
            stats[window] = WindowStats(used=len(inside), limit=limit, reset_in=reset_in)
        return stats

    @property
    def tracked_keys(self) -> list[str]:
        return list(self._requests)


def scheduling_rate_limiter() -> RateLimiter:
    """Limiter for schedule/update/cancel calls, sized from settings."""
    return RateLimiter(
        max_per_minute=settings.rate_limit_per_minute,
        max_per_hour=settings.rate_limit_per_hour,
        max_per_day=settings.rate_limit_per_day,
    )
