"""Error taxonomy for the scheduling engine."""

from __future__ import annotations

from typing import Any


class SchedulerError(Exception):
    """Base class for all scheduler errors.

    Attributes:
        code: Stable machine-readable error code.
        status_code: HTTP status used by the webhook surface.
    """

    code = "SCHEDULER_ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SchedulerError):
    """Bad input shape or semantics."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class InvalidDateError(SchedulerError):
    code = "INVALID_DATE"

    def __init__(self, date_string: str) -> None:
        super().__init__(f"Invalid date: {date_string}")
        self.date_string = date_string


class RecurrenceError(SchedulerError):
    code = "RECURRENCE_ERROR"


class NotFoundError(SchedulerError):
    code = "TASK_NOT_FOUND"
    status_code = 404

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(SchedulerError):
    """A conditional status update matched nothing.

    Either the task does not exist or a concurrent actor already moved it
    out of the expected prior status.
    """

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, task_id: str, expected: str) -> None:
        super().__init__(f"Task {task_id} not found or not in {expected} state")
        self.task_id = task_id
        self.expected = expected


class RateLimitExceeded(SchedulerError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, window: str, limit: int, current: int) -> None:
        super().__init__(f"Rate limit exceeded: max {limit} requests per {window}")
        self.window = window
        self.limit = limit
        self.current = current

    @property
    def details(self) -> dict[str, Any]:
        return {"window": self.window, "limit": self.limit, "current": self.current}


class TaskExecutionError(SchedulerError):
    """Generic execution failure wrapping the underlying cause."""

    code = "TASK_EXECUTION_FAILED"
    status_code = 500

    def __init__(self, task_id: str, cause: BaseException | str) -> None:
        super().__init__(f"Task execution failed: {cause}")
        self.task_id = task_id
        self.cause = cause


class TaskTimeoutError(TaskExecutionError):
    code = "TASK_TIMEOUT"

    def __init__(self, task_id: str, timeout_ms: int) -> None:
        message = f"Task {task_id} timed out after {timeout_ms}ms"
        SchedulerError.__init__(self, message)
        self.task_id = task_id
        self.cause = message
        self.timeout_ms = timeout_ms


class JobDispatchError(TaskExecutionError):
    code = "JOB_DISPATCH_FAILED"
