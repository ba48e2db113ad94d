"""TaskExecutor — claims due tasks and runs them locally or as external jobs."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cadence.config import settings
from cadence.errors import (
    InvalidTransitionError,
    NotFoundError,
    TaskExecutionError,
    TaskTimeoutError,
    ValidationError,
)
from cadence.scheduler.models import JobResult, Task, TaskStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from cadence.notifications.notifier import FailureNotifier
    from cadence.scheduler.jobs import JobClient, JobTypeRegistry
    from cadence.scheduler.service import TaskScheduler

    TaskFunction = Callable[[Task], Awaitable[Any] | Any]

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """Maps owner refs to local executor functions.

    Functions may be async or plain; a plain function's return value is the
    task result and is not subject to the timeout.
    """

    def __init__(self) -> None:
        self._executors: dict[str, TaskFunction] = {}

    def register(self, owner_ref: str, fn: TaskFunction) -> None:
        if not callable(fn):
            msg = "Executor must be callable"
            raise TypeError(msg)
        self._executors[owner_ref] = fn
        logger.info("Registered task executor for owner: %s", owner_ref)

    def unregister(self, owner_ref: str) -> bool:
        removed = self._executors.pop(owner_ref, None) is not None
        if removed:
            logger.info("Unregistered task executor for owner: %s", owner_ref)
        return removed

    def get(self, owner_ref: str) -> TaskFunction | None:
        return self._executors.get(owner_ref)

    def __contains__(self, owner_ref: object) -> bool:
        return owner_ref in self._executors

    def list_owners(self) -> list[str]:
        return list(self._executors.keys())


@dataclass
class TaskOutcome:
    """What happened to one task handed to :meth:`TaskExecutor.process`.

    ``claimed`` is False when another actor moved the task first; nothing
    else was attempted in that case.
    """

    task_id: str
    claimed: bool
    success: bool = False
    result: Any = None
    error: str | None = None
    job_id: str | None = None
    duration_ms: int = 0

    @property
    def dispatched(self) -> bool:
        return self.job_id is not None


class TaskExecutor:
    """Runs claimed tasks.

    A task is run by the executor registered for its ``owner_ref``. Without
    one, it is dispatched to the external job system under the job type
    mapped for the owner, and stays running until the job's completion
    callback arrives.

    Args:
        scheduler: TaskScheduler owning the task lifecycle.
        registry: Local executor functions by owner ref.
        job_client: External job system client (optional).
        job_types: Owner ref → job type mappings (optional).
        notifier: FailureNotifier for failure notices (optional).
        task_timeout_ms: Deadline for a local executor function.
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        registry: ExecutorRegistry | None = None,
        *,
        job_client: JobClient | None = None,
        job_types: JobTypeRegistry | None = None,
        notifier: FailureNotifier | None = None,
        task_timeout_ms: int | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._registry = registry or ExecutorRegistry()
        self._job_client = job_client
        self._job_types = job_types
        self._notifier = notifier
        self._timeout_ms = task_timeout_ms or settings.queue_task_timeout_ms

    @property
    def registry(self) -> ExecutorRegistry:
        return self._registry

    @property
    def task_timeout_ms(self) -> int:
        return self._timeout_ms

    # -- Processing ------------------------------------------------------------

    async def process(self, task: Task) -> TaskOutcome:
        """Claim *task*, run or dispatch it, and record the outcome.

        Never raises: failures are recorded on the task and in the outcome.
        """
        started = time.monotonic()
        try:
            await self._scheduler.start_task(task.id)
        except InvalidTransitionError:
            logger.info("Task %s already claimed elsewhere, skipping", task.id)
            return TaskOutcome(task_id=task.id, claimed=False)
        except Exception:
            logger.exception("Failed to claim task %s", task.id)
            return TaskOutcome(task_id=task.id, claimed=False, error="claim failed")

        logger.info("Executing task '%s' (%s) owner=%s", task.title, task.id, task.owner_ref)
        try:
            outcome = await self._run(task)
        except Exception as exc:
            outcome = TaskOutcome(task_id=task.id, claimed=True, error=str(exc))
            logger.exception("Task '%s' (%s) failed", task.title, task.id)
            await self._record_failure(task, exc)

        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        return outcome

    async def _run(self, task: Task) -> TaskOutcome:
        fn = self._registry.get(task.owner_ref)
        if fn is None:
            return await self._dispatch_as_job(task)

        result = fn(task)
        if inspect.isawaitable(result):
            try:
                result = await asyncio.wait_for(result, timeout=self._timeout_ms / 1000)
            except TimeoutError as exc:
                raise TaskTimeoutError(task.id, self._timeout_ms) from exc

        await self._scheduler.complete_task(task.id, result)
        logger.info("Task '%s' (%s) completed", task.title, task.id)
        return TaskOutcome(task_id=task.id, claimed=True, success=True, result=result)

    async def _dispatch_as_job(self, task: Task) -> TaskOutcome:
        job_type = self._job_types.resolve(task.owner_ref) if self._job_types else None
        if job_type is None:
            msg = f"No executor or job type mapping for owner: {task.owner_ref}"
            raise TaskExecutionError(task.id, msg)
        if self._job_client is None:
            msg = "No job client configured"
            raise TaskExecutionError(task.id, msg)

        job = await self._job_client.create_job(
            job_type,
            {"taskId": task.id, "ownerRef": task.owner_ref, **task.payload},
            {
                "scheduledTaskId": task.id,
                "projectRef": task.project_ref,
                "orgRef": task.org_ref,
            },
        )
        await self._scheduler.attach_job(task.id, job.id)
        logger.info("Task %s dispatched as %s job %s", task.id, job_type, job.id)
        return TaskOutcome(task_id=task.id, claimed=True, success=True, job_id=job.id)

    async def _record_failure(self, task: Task, error: BaseException) -> None:
        try:
            await self._scheduler.fail_task(task.id, error)
        except InvalidTransitionError:
            logger.warning("Task %s left running state before it could be failed", task.id)
        except Exception:
            logger.exception("Failed to record failure of task %s", task.id)
        await self._notify_failure(task, error)

    async def _notify_failure(self, task: Task, error: BaseException) -> None:
        """Best-effort failure notice; never raises."""
        if self._notifier is None:
            return
        message = (
            f"Scheduled task failed: {task.title}\n"
            f"Owner: {task.owner_ref}\n"
            f"Error: {error}\n"
            f"Task ID: {task.id}"
        )
        try:
            await self._notifier.send(task.org_ref or task.owner_ref, message)
        except Exception:
            logger.exception("Failed to send failure notification for task %s", task.id)

    # -- Entry points ----------------------------------------------------------

    async def execute_manually(self, task_id: str, executed_by: str | None = None) -> TaskOutcome:
        """Run a task now, regardless of its scheduled time.

        Raises:
            NotFoundError: No task has *task_id*.
            ValidationError: The task is running or already completed.
        """
        task = await self._scheduler.get_task(task_id)
        if task is None:
            raise NotFoundError(task_id)
        if task.status == TaskStatus.RUNNING:
            msg = "Task is already running"
            raise ValidationError(msg)
        if task.status == TaskStatus.COMPLETED:
            msg = "Task has already been completed"
            raise ValidationError(msg)

        logger.info("Manually executing task %s (by %s)", task_id, executed_by or "unknown")
        return await self.process(task)

    async def handle_job_completion(self, job_id: str, result: JobResult | dict) -> bool:
        """Settle the task correlated with *job_id*. Returns False if nothing was settled."""
        report = result if isinstance(result, JobResult) else JobResult.model_validate(result)
        try:
            task = await self._scheduler.get_task_by_job_id(job_id)
        except Exception:
            logger.exception("Failed to look up task for job %s", job_id)
            return False
        if task is None:
            logger.warning("No scheduled task found for job %s", job_id)
            return False

        try:
            if report.succeeded:
                await self._scheduler.complete_task(task.id, report.result)
            else:
                error = report.error or "Job failed"
                await self._scheduler.fail_task(task.id, error)
                await self._notify_failure(task, TaskExecutionError(task.id, error))
        except InvalidTransitionError:
            logger.warning(
                "Job %s reported for task %s, which is no longer running", job_id, task.id
            )
            return False
        except Exception:
            logger.exception("Failed to settle task %s from job %s", task.id, job_id)
            return False

        logger.info("Job %s settled task %s as %s", job_id, task.id, report.status)
        return True

    async def process_trigger_tasks(
        self, event_name: str, event_data: Any = None
    ) -> list[TaskOutcome]:
        """Run every scheduled trigger task listening for *event_name*.

        The event is attached to each task's payload as ``trigger_event``.
        """
        tasks = await self._scheduler.find_trigger_tasks(event_name)
        if not tasks:
            return []

        logger.info("Processing %d trigger task(s) for event: %s", len(tasks), event_name)
        outcomes = []
        timestamp = self._scheduler.now().isoformat()
        for task in tasks:
            enriched = task.model_copy(
                update={
                    "payload": {
                        **task.payload,
                        "trigger_event": {
                            "type": event_name,
                            "data": event_data,
                            "timestamp": timestamp,
                        },
                    }
                }
            )
            outcomes.append(await self.process(enriched))
        return outcomes
