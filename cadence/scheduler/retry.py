"""Bounded retry with exponential backoff for store writes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from cadence.errors import SchedulerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 5.0,
    operation: str = "operation",
) -> T:
    """Await ``fn()`` up to *max_retries* times, doubling the delay each time.

    Scheduler errors (validation, not-found, ...) are raised immediately;
    only unexpected failures such as a locked database are retried.
    """
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except SchedulerError:
            raise
        except Exception:
            if attempt == max_retries:
                raise
            delay = min(initial_delay * 2 ** (attempt - 1), max_delay)
            logger.warning(
                "Retrying %s (attempt %d/%d) after %.1fs",
                operation,
                attempt,
                max_retries,
                delay,
                exc_info=True,
            )
            await asyncio.sleep(delay)
    msg = "max_retries must be at least 1"
    raise ValueError(msg)
