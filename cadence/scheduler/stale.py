"""Stale task recovery — fail tasks stuck in running past a threshold.

A task stays running while its executor function runs or while its
external job is outstanding. A crashed worker or a lost job callback would
otherwise leave it running forever.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from cadence.config import settings
from cadence.errors import InvalidTransitionError
from cadence.scheduler.models import TaskStatus
from cadence.scheduler.store import TaskQuery

if TYPE_CHECKING:
    from cadence.scheduler.service import TaskScheduler

logger = logging.getLogger(__name__)


async def recover_stale_tasks(
    scheduler: TaskScheduler,
    threshold_ms: int | None = None,
) -> int:
    """Fail running tasks whose ``executed_at`` is older than *threshold_ms*.

    Returns the number of tasks recovered.
    """
    threshold_ms = threshold_ms or settings.stale_task_threshold_ms
    cutoff = scheduler.now() - timedelta(milliseconds=threshold_ms)
    stale = await scheduler.store.find_tasks(
        TaskQuery(statuses=[TaskStatus.RUNNING], executed_before=cutoff)
    )

    recovered = 0
    for task in stale:
        try:
            await scheduler.fail_task(
                task.id, f"Task exceeded {threshold_ms}ms in running state"
            )
        except InvalidTransitionError:
            continue
        recovered += 1
        logger.warning("Recovered stale task: %s (%s)", task.title, task.id)

    if recovered:
        logger.info("Recovered %d stale task(s)", recovered)
    return recovered
