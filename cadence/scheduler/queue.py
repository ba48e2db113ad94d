"""TaskQueue — periodic poll loop feeding due tasks to the executor."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cadence.config import settings
from cadence.scheduler.models import TaskStatus, TaskType
from cadence.scheduler.stale import recover_stale_tasks
from cadence.scheduler.store import TaskQuery

if TYPE_CHECKING:
    from cadence.scheduler.executor import TaskExecutor, TaskOutcome
    from cadence.scheduler.service import TaskScheduler

logger = logging.getLogger(__name__)

_POLL_JOB_ID = "task-queue-poll"


@dataclass(frozen=True)
class QueueStatus:
    running: bool
    poll_interval_ms: int
    batch_size: int
    ready: int
    in_progress: int
    scheduled: int
    failed_24h: int
    completed_24h: int
    task_timeout_ms: int
    registered_executors: list[str]


class TaskQueue:
    """Polls for due tasks on a fixed interval and processes them in batches.

    The poll job runs with ``max_instances=1``: a tick that comes due while
    the previous one is still in flight is skipped, not stacked.

    Args:
        scheduler: TaskScheduler to read due tasks from.
        executor: TaskExecutor that claims and runs each task.
        poll_interval_ms: Delay between ticks.
        batch_size: Maximum tasks fetched per tick.
        stale_threshold_ms: Running tasks older than this are failed each tick.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        executor: TaskExecutor,
        *,
        poll_interval_ms: int | None = None,
        batch_size: int | None = None,
        stale_threshold_ms: int | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._executor = executor
        self._poll_interval_ms = poll_interval_ms or settings.queue_poll_interval_ms
        self._batch_size = batch_size or settings.queue_batch_size
        self._stale_threshold_ms = stale_threshold_ms or settings.stale_task_threshold_ms
        self._aps: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._aps is not None

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start polling. The first tick runs immediately. No-op if running."""
        if self._aps is not None:
            logger.info("Task queue is already running")
            return

        self._aps = AsyncIOScheduler(timezone="UTC")
        self._aps.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._poll_interval_ms / 1000),
            id=_POLL_JOB_ID,
            name="Task queue poll",
            next_run_time=datetime.now(UTC),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._aps.start()
        logger.info(
            "Task queue started (interval=%dms, batch=%d)",
            self._poll_interval_ms,
            self._batch_size,
        )

    async def stop(self) -> None:
        """Stop polling. No-op if not running."""
        if self._aps is None:
            logger.info("Task queue is not running")
            return
        self._aps.shutdown(wait=False)
        self._aps = None
        logger.info("Task queue stopped")

    # -- Processing ------------------------------------------------------------

    async def _tick(self) -> None:
        try:
            await recover_stale_tasks(self._scheduler, self._stale_threshold_ms)
            await self.process_batch()
        except Exception:
            logger.exception("Task queue tick failed")

    async def process_batch(self) -> list[TaskOutcome]:
        """Fetch up to ``batch_size`` due tasks and process them concurrently."""
        tasks = await self._scheduler.get_tasks_ready_for_execution(self._batch_size)
        if not tasks:
            return []

        logger.info("Processing %d scheduled task(s)", len(tasks))
        outcomes = list(await asyncio.gather(*(self._executor.process(t) for t in tasks)))

        claimed = [o for o in outcomes if o.claimed]
        succeeded = sum(1 for o in claimed if o.success)
        logger.info(
            "Task batch complete: %d successful, %d failed, %d skipped",
            succeeded,
            len(claimed) - succeeded,
            len(outcomes) - len(claimed),
        )
        return outcomes

    async def status(self) -> QueueStatus:
        """Queue configuration, registered executors and current task counts."""
        store = self._scheduler.store
        now = self._scheduler.now()
        day_ago = now - timedelta(hours=24)
        ready, in_progress, scheduled, failed, completed = await asyncio.gather(
            store.count_tasks(
                TaskQuery(
                    statuses=[TaskStatus.SCHEDULED],
                    scheduled_to=now,
                    exclude_types=[TaskType.TRIGGER],
                )
            ),
            store.count_tasks(TaskQuery(statuses=[TaskStatus.RUNNING])),
            store.count_tasks(TaskQuery(statuses=[TaskStatus.SCHEDULED], scheduled_after=now)),
            store.count_tasks(TaskQuery(statuses=[TaskStatus.FAILED], failed_since=day_ago)),
            store.count_tasks(
                TaskQuery(statuses=[TaskStatus.COMPLETED], completed_since=day_ago)
            ),
        )
        return QueueStatus(
            running=self.running,
            poll_interval_ms=self._poll_interval_ms,
            batch_size=self._batch_size,
            ready=ready,
            in_progress=in_progress,
            scheduled=scheduled,
            failed_24h=failed,
            completed_24h=completed,
            task_timeout_ms=self._executor.task_timeout_ms,
            registered_executors=self._executor.registry.list_owners(),
        )
