"""Application wiring — builds the engine's components and owns their lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cadence.config import settings
from cadence.notifications.notifier import FailureNotifier
from cadence.notifications.webhook_channel import WebhookChannel
from cadence.scheduler.executor import ExecutorRegistry, TaskExecutor
from cadence.scheduler.jobs import HttpJobClient, JobTypeRegistry
from cadence.scheduler.queue import TaskQueue
from cadence.scheduler.ratelimit import scheduling_rate_limiter
from cadence.scheduler.service import TaskScheduler
from cadence.scheduler.store import TaskStore
from cadence.webhooks.server import WebhookServer

logger = logging.getLogger(__name__)


def _build_notifier() -> FailureNotifier:
    """Failure notices go to the webhook channel when one is configured."""
    channels = [WebhookChannel()] if settings.failure_webhook_url else []
    notifier = FailureNotifier(channels)
    logger.info("Notification channels: %s", notifier.channel_names or ["none"])
    return notifier


@dataclass
class CadenceApp:
    scheduler: TaskScheduler
    executor: TaskExecutor
    queue: TaskQueue
    server: WebhookServer
    job_client: HttpJobClient
    notifier: FailureNotifier

    @property
    def registry(self) -> ExecutorRegistry:
        return self.executor.registry

    @classmethod
    def build(cls, store: TaskStore | None = None) -> CadenceApp:
        """Wire store, scheduler, executor, queue, and webhook server from settings."""
        notifier = _build_notifier()
        scheduler = TaskScheduler(
            store or TaskStore(),
            rate_limiter=scheduling_rate_limiter(),
        )
        job_client = HttpJobClient()
        executor = TaskExecutor(
            scheduler,
            ExecutorRegistry(),
            job_client=job_client,
            job_types=JobTypeRegistry.from_settings(),
            notifier=notifier,
        )
        queue = TaskQueue(scheduler, executor)
        server = WebhookServer(executor, queue)
        return cls(
            scheduler=scheduler,
            executor=executor,
            queue=queue,
            server=server,
            job_client=job_client,
            notifier=notifier,
        )

    async def start(self) -> None:
        await self.server.start()
        if settings.queue_auto_start:
            await self.queue.start()
        else:
            logger.info("QUEUE_AUTO_START is off — task queue not started")

    async def stop(self) -> None:
        await self.queue.stop()
        await self.server.stop()
        await self.job_client.close()
        await self.notifier.close()
