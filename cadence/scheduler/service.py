"""TaskScheduler — task lifecycle: validation, persistence, transitions, history.

Status transitions are compare-and-swap updates on the task's status
(:meth:`TaskStore.update_task` with ``expected_status``). There are no
in-process locks; a lost race surfaces as ``InvalidTransitionError``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from cadence.errors import InvalidTransitionError, NotFoundError, ValidationError
from cadence.scheduler.dates import DateResolver, NaturalDateResolver, resolve_date
from cadence.scheduler.models import (
    ScheduleTaskInput,
    Task,
    TaskHistoryEntry,
    TaskStatus,
    TaskType,
    TaskUpdate,
    UpcomingTasksQuery,
    utcnow,
)
from cadence.scheduler.recurrence import (
    RecurrenceParser,
    default_parser,
    expand_virtual_occurrences,
    next_occurrence,
    normalize_recurrence,
)
from cadence.scheduler.retry import retry_with_backoff
from cadence.scheduler.store import TaskQuery

if TYPE_CHECKING:
    from cadence.scheduler.ratelimit import RateLimiter
    from cadence.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

SYSTEM = "system"

_CLAIMABLE = (TaskStatus.SCHEDULED, TaskStatus.PENDING)
_FINISHED = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


def _validate(model: type, data: Any, message: str):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        details = exc.errors(include_url=False, include_context=False)
        raise ValidationError(message, details) from exc


class TaskScheduler:
    """Owns the task lifecycle on top of a :class:`TaskStore`.

    Args:
        store: Durable task store.
        date_resolver: Resolves natural-language dates (``dateparser`` by default).
        recurrence_parser: Recurrence grammar (RFC 5545 by default).
        rate_limiter: Optional limiter applied to caller-driven operations.
        clock: Returns the current aware UTC time.
        retry_delay: Initial backoff for store write retries, in seconds.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        date_resolver: DateResolver | None = None,
        recurrence_parser: RecurrenceParser = default_parser,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
        retry_delay: float = 1.0,
    ) -> None:
        self._store = store
        self._dates = date_resolver or NaturalDateResolver()
        self._parser = recurrence_parser
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._retry_delay = retry_delay

    @property
    def store(self) -> TaskStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    # -- Helpers ---------------------------------------------------------------

    def _check_rate(self, subject: str | None, operation: str) -> None:
        if self._rate_limiter is None or not subject or subject == SYSTEM:
            return
        self._rate_limiter.check_limit(subject, operation)

    async def _write(self, fn, operation: str):
        return await retry_with_backoff(
            fn,
            initial_delay=self._retry_delay,
            max_delay=self._retry_delay * 5,
            operation=operation,
        )

    async def _log_history(
        self,
        task_id: str,
        action: str,
        details: dict[str, Any] | None = None,
        performed_by: str | None = None,
    ) -> None:
        """Append a history entry. Failures are logged, never raised."""
        try:
            await self._store.add_history(
                TaskHistoryEntry(
                    task_id=task_id,
                    action=action,
                    timestamp=self._clock(),
                    details=to_jsonable_python(details or {}),
                    performed_by=performed_by or SYSTEM,
                )
            )
        except Exception:
            logger.exception("Failed to write history: task=%s action=%s", task_id, action)

    async def _transition(
        self,
        task_id: str,
        fields: dict[str, Any],
        expected: tuple[TaskStatus, ...],
    ) -> None:
        now = self._clock()
        matched = await self._store.update_task(
            task_id,
            {**fields, "updated_at": now},
            expected_status=expected,
        )
        if matched == 0:
            raise InvalidTransitionError(task_id, "/".join(s.value for s in expected))

    # -- Creation --------------------------------------------------------------

    async def schedule(self, data: ScheduleTaskInput | dict[str, Any]) -> Task:
        """Validate, persist and return a new task.

        Raises:
            ValidationError: Bad input, or a manual task dated in the past.
            InvalidDateError: ``date`` could not be resolved.
            RecurrenceError: Malformed recurrence.
            RateLimitExceeded: The caller exhausted its scheduling quota.
        """
        validated: ScheduleTaskInput = _validate(ScheduleTaskInput, data, "Invalid task data")
        created_by = validated.created_by or validated.owner_ref
        self._check_rate(created_by, "schedule")

        scheduled_at = resolve_date(validated.date, self._dates)

        task_type = validated.type
        recurrence = None
        if validated.recurrence is not None:
            recurrence = normalize_recurrence(validated.recurrence, self._parser)
            task_type = TaskType.RECURRING
        if validated.trigger is not None:
            task_type = TaskType.TRIGGER

        now = self._clock()
        if task_type == TaskType.MANUAL and scheduled_at <= now:
            msg = "Scheduled date must be in the future for manual tasks"
            raise ValidationError(msg)

        task = Task(
            title=validated.title,
            description=validated.description,
            type=task_type,
            status=TaskStatus.SCHEDULED,
            scheduled_at=scheduled_at,
            owner_ref=validated.owner_ref,
            project_ref=validated.project_ref,
            org_ref=validated.org_ref,
            parent_task_ref=validated.parent_task_ref,
            recurrence=recurrence,
            trigger=validated.trigger,
            payload=validated.payload,
            metadata=validated.metadata,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

        try:
            task = await self._write(lambda: self._store.add_task(task), "task insertion")
        except Exception:
            logger.exception("Failed to create task: %s (owner=%s)", task.title, task.owner_ref)
            raise

        await self._log_history(
            task.id, "created", {"initial_data": task.model_dump(mode="json")}, created_by
        )
        logger.info(
            "Scheduled %s task '%s' (%s) for %s",
            task.type.value,
            task.title,
            task.id,
            task.scheduled_at.isoformat(),
        )
        return task

    # -- Queries ---------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        return await self._store.get_task(task_id)

    async def get_task_by_job_id(self, job_id: str) -> Task | None:
        return await self._store.get_task_by_job_id(job_id)

    async def get_history(self, task_id: str) -> list[TaskHistoryEntry]:
        return await self._store.list_history(task_id)

    async def get_upcoming_tasks(
        self, query: UpcomingTasksQuery | dict[str, Any] | None = None
    ) -> list[Task]:
        """List tasks in a date window, ascending by ``scheduled_at``.

        With ``include_recurring`` and ``to`` set, recurring tasks are
        replaced by their virtual occurrences inside ``[from, to]``. Recurring
        tasks first scheduled before ``from`` still contribute occurrences.
        """
        q: UpcomingTasksQuery = _validate(UpcomingTasksQuery, query, "Invalid query parameters")
        start = q.from_ or self._clock()

        base = TaskQuery(owner_ref=q.owner_ref, project_ref=q.project_ref, org_ref=q.org_ref)
        if q.status is not None:
            base.statuses = [q.status]
        elif not q.include_completed:
            base.exclude_statuses = _FINISHED

        literal = TaskQuery(**{**vars(base), "scheduled_from": start, "scheduled_to": q.to})
        tasks = await self._store.find_tasks(literal, limit=q.limit)

        if q.include_recurring and q.to is not None:
            recurring_query = TaskQuery(
                **{**vars(base), "types": [TaskType.RECURRING], "scheduled_to": q.to}
            )
            recurring = await self._store.find_tasks(recurring_query, limit=q.limit)
            virtual = expand_virtual_occurrences(recurring, start, q.to, self._parser)
            tasks = [t for t in tasks if t.type != TaskType.RECURRING] + virtual
            tasks.sort(key=lambda t: t.scheduled_at)

        return tasks

    async def get_tasks_ready_for_execution(self, limit: int = 10) -> list[Task]:
        """Scheduled, non-trigger tasks that are due, oldest first."""
        query = TaskQuery(
            statuses=[TaskStatus.SCHEDULED],
            scheduled_to=self._clock(),
            exclude_types=[TaskType.TRIGGER],
        )
        return await self._store.find_tasks(query, limit=limit)

    async def find_trigger_tasks(self, event_name: str) -> list[Task]:
        """Scheduled event-trigger tasks listening for *event_name*."""
        query = TaskQuery(
            statuses=[TaskStatus.SCHEDULED],
            types=[TaskType.TRIGGER],
            trigger_type="event",
            trigger_event=event_name,
        )
        return await self._store.find_tasks(query)

    # -- Caller-driven mutations -----------------------------------------------

    async def update_task(
        self,
        task_id: str,
        patch: TaskUpdate | dict[str, Any],
        updated_by: str | None = None,
    ) -> Task:
        """Apply *patch* to a task and return the updated task.

        Raises:
            NotFoundError: No task has *task_id*.
        """
        validated: TaskUpdate = _validate(TaskUpdate, patch, "Invalid update data")
        self._check_rate(updated_by, "update")

        fields: dict[str, Any] = {
            name: getattr(validated, name)
            for name in validated.model_fields_set
            if getattr(validated, name) is not None
        }
        if "scheduled_at" in fields:
            fields["scheduled_at"] = resolve_date(fields["scheduled_at"], self._dates)
        if "recurrence" in fields:
            fields["recurrence"] = normalize_recurrence(fields["recurrence"], self._parser)
            fields["type"] = TaskType.RECURRING
        if "trigger" in fields:
            fields["type"] = TaskType.TRIGGER
        fields["updated_at"] = self._clock()

        matched = await self._write(
            lambda: self._store.update_task(task_id, fields), "task update"
        )
        if matched == 0:
            raise NotFoundError(task_id)

        await self._log_history(task_id, "updated", {"updates": fields}, updated_by)
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    async def cancel_task(
        self,
        task_id: str,
        reason: str | None = None,
        cancelled_by: str | None = None,
    ) -> None:
        """Cancel a task that is not yet completed or cancelled.

        Raises:
            NotFoundError: No task has *task_id*.
            ValidationError: The task is already completed or cancelled.
        """
        self._check_rate(cancelled_by, "cancel")
        now = self._clock()
        matched = await self._store.update_task(
            task_id,
            {
                "status": TaskStatus.CANCELLED,
                "cancelled_at": now,
                "cancel_reason": reason or "Cancelled by user",
                "updated_at": now,
            },
            excluded_status=_FINISHED,
        )
        if matched == 0:
            if await self._store.get_task(task_id) is None:
                raise NotFoundError(task_id)
            msg = "Task is already completed or cancelled"
            raise ValidationError(msg)

        await self._log_history(task_id, "cancelled", {"reason": reason}, cancelled_by)
        logger.info("Cancelled task %s (%s)", task_id, reason or "no reason")

    async def reschedule_task(
        self,
        task_id: str,
        new_date: datetime | str,
        rescheduled_by: str | None = None,
    ) -> Task:
        """Move a task to a new, strictly future date."""
        scheduled_at = resolve_date(new_date, self._dates)
        if scheduled_at <= self._clock():
            msg = "Rescheduled date must be in the future"
            raise ValidationError(msg)
        return await self.update_task(
            task_id, TaskUpdate(scheduled_at=scheduled_at), rescheduled_by
        )

    async def delete_task(self, task_id: str, deleted_by: str | None = None) -> None:
        """Delete a task and purge its history. Running tasks can't be deleted."""
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundError(task_id)
        if task.status == TaskStatus.RUNNING:
            msg = "Cannot delete a running task"
            raise ValidationError(msg)

        await self._store.delete_history(task_id)
        await self._store.delete_task(task_id)
        logger.info("Task %s deleted by %s", task_id, deleted_by or SYSTEM)

    # -- Execution transitions -------------------------------------------------

    async def start_task(self, task_id: str, started_by: str = SYSTEM) -> None:
        """Claim a task: ``scheduled|pending → running``.

        Raises:
            InvalidTransitionError: Missing, or claimed by someone else first.
        """
        await self._transition(
            task_id,
            {"status": TaskStatus.RUNNING, "executed_at": self._clock()},
            _CLAIMABLE,
        )
        await self._log_history(task_id, "started", {}, started_by)

    async def complete_task(
        self,
        task_id: str,
        result: Any = None,
        completed_by: str = SYSTEM,
    ) -> Task | None:
        """Finish a running task. Returns the successor of a recurring task, if any."""
        fields: dict[str, Any] = {
            "status": TaskStatus.COMPLETED,
            "completed_at": self._clock(),
        }
        if result is not None:
            fields["result"] = result
        await self._transition(task_id, fields, (TaskStatus.RUNNING,))
        await self._log_history(task_id, "completed", {"result": result}, completed_by)

        task = await self._store.get_task(task_id)
        if task is None or not task.is_recurring:
            return None
        try:
            return await self._schedule_next_recurrence(task)
        except Exception:
            logger.exception("Failed to schedule next occurrence of task %s", task_id)
            return None

    async def fail_task(
        self,
        task_id: str,
        error: BaseException | str,
        failed_by: str = SYSTEM,
    ) -> None:
        """Mark a running task failed, recording *error*."""
        message = str(error) or type(error).__name__
        await self._transition(
            task_id,
            {"status": TaskStatus.FAILED, "failed_at": self._clock(), "error": message},
            (TaskStatus.RUNNING,),
        )
        await self._log_history(task_id, "failed", {"error": message}, failed_by)

    async def attach_job(self, task_id: str, job_id: str) -> None:
        """Correlate a task with the external job now executing it."""
        await self._store.update_task(task_id, {"job_id": job_id, "updated_at": self._clock()})
        await self._log_history(task_id, "dispatched", {"job_id": job_id})

    async def _schedule_next_recurrence(self, task: Task) -> Task | None:
        next_at = next_occurrence(task, self._clock(), parser=self._parser)
        if next_at is None:
            logger.info("Recurrence ended for task %s", task.id)
            return None

        successor = await self.schedule(
            ScheduleTaskInput(
                date=next_at,
                title=task.title,
                description=task.description,
                owner_ref=task.owner_ref,
                project_ref=task.project_ref,
                org_ref=task.org_ref,
                parent_task_ref=task.parent_task_ref,
                type=task.type,
                recurrence=task.recurrence,
                trigger=task.trigger,
                payload=task.payload,
                metadata={**task.metadata, "previous_task_id": task.id},
                created_by=SYSTEM,
            )
        )
        logger.info("Scheduled next occurrence of %s as %s", task.id, successor.id)
        return successor
