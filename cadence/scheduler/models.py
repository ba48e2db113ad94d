"""Task data models and caller-facing input schemas."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_core import to_jsonable_python

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_OWNER_REF_LENGTH = 100
MAX_PAYLOAD_BYTES = 10 * 1024
MAX_METADATA_BYTES = 5 * 1024
MAX_TASKS_PER_QUERY = 1000


class TaskStatus(StrEnum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TaskType(StrEnum):
    MANUAL = "manual"
    TRIGGER = "trigger"
    RECURRING = "recurring"


class RecurrencePattern(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class TriggerType(StrEnum):
    WEBHOOK = "webhook"
    EVENT = "event"
    CONDITION = "condition"


def utcnow() -> datetime:
    return datetime.now(UTC)


def make_task_id() -> str:
    """Generate a new task ID."""
    return uuid.uuid4().hex


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_time(value: datetime | None) -> str | None:
    """Fixed-width ISO 8601 so stored timestamps compare lexicographically."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def to_db_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(to_jsonable_python(value))


def _json_size(value: Any) -> int:
    return len(json.dumps(to_jsonable_python(value)).encode("utf-8"))


class Recurrence(BaseModel):
    """How a recurring task repeats.

    Range checks (``interval``, ``days_of_week``, ``day_of_month`` and the
    custom rule grammar) live in :func:`cadence.scheduler.recurrence.normalize_recurrence`
    so that they surface as ``RecurrenceError`` rather than shape errors.

    Attributes:
        pattern: Base frequency.
        interval: Step between occurrences, in units of ``pattern``.
        end_date: Last instant an occurrence may fall on.
        days_of_week: Weekdays for weekly patterns (0 = Monday).
        day_of_month: Day of month for monthly patterns.
        custom_rule: RFC 5545 RRULE string; overrides every other field.
    """

    pattern: RecurrencePattern = RecurrencePattern.DAILY
    interval: int = 1
    end_date: datetime | None = None
    days_of_week: list[int] | None = None
    day_of_month: int | None = None
    custom_rule: str | None = None

    @field_validator("end_date")
    @classmethod
    def _utc_end_date(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)


class Trigger(BaseModel):
    """External activation condition. ``config`` is opaque to the engine."""

    type: TriggerType
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def event_name(self) -> str | None:
        name = self.config.get("eventName")
        return str(name) if name else None


class Task(BaseModel):
    """A unit of scheduled work.

    ``id`` is empty until the store assigns one on insert. Virtual
    recurrence occurrences set ``is_recurrence_instance`` and
    ``original_task_id`` and are never persisted.
    """

    id: str = ""
    title: str
    description: str = ""
    type: TaskType = TaskType.MANUAL
    status: TaskStatus = TaskStatus.SCHEDULED
    scheduled_at: datetime
    owner_ref: str
    project_ref: str | None = None
    org_ref: str | None = None
    parent_task_ref: str | None = None
    recurrence: Recurrence | None = None
    trigger: Trigger | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    executed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None
    result: Any = None
    error: str | None = None
    cancel_reason: str | None = None
    job_id: str | None = None
    is_recurrence_instance: bool = False
    original_task_id: str | None = None

    @field_validator(
        "scheduled_at",
        "created_at",
        "updated_at",
        "executed_at",
        "completed_at",
        "cancelled_at",
        "failed_at",
    )
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    # -- Convenience properties ------------------------------------------------

    @property
    def is_recurring(self) -> bool:
        return self.type == TaskType.RECURRING and self.recurrence is not None

    @property
    def is_trigger(self) -> bool:
        return self.type == TaskType.TRIGGER

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching ``TASK_COLUMNS``."""
        return (
            self.id,
            self.title,
            self.description,
            self.type.value,
            self.status.value,
            to_db_time(self.scheduled_at),
            self.owner_ref,
            self.project_ref,
            self.org_ref,
            self.parent_task_ref,
            to_db_json(self.recurrence),
            to_db_json(self.trigger),
            self.trigger.type.value if self.trigger else None,
            self.trigger.event_name if self.trigger else None,
            to_db_json(self.payload),
            to_db_json(self.metadata),
            self.created_by,
            to_db_time(self.created_at),
            to_db_time(self.updated_at),
            to_db_time(self.executed_at),
            to_db_time(self.completed_at),
            to_db_time(self.cancelled_at),
            to_db_time(self.failed_at),
            to_db_json(self.result),
            self.error,
            self.cancel_reason,
            self.job_id,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Task:
        """Deserialize from a SQLite row tuple in ``TASK_COLUMNS`` order."""
        data = dict(zip(TASK_COLUMNS, row, strict=True))
        for key in ("recurrence", "trigger", "payload", "metadata", "result"):
            raw = data[key]
            data[key] = json.loads(raw) if raw is not None else None
        data["payload"] = data["payload"] or {}
        data["metadata"] = data["metadata"] or {}
        data.pop("trigger_type")
        data.pop("trigger_event")
        return cls.model_validate(data)


TASK_COLUMNS = (
    "id",
    "title",
    "description",
    "type",
    "status",
    "scheduled_at",
    "owner_ref",
    "project_ref",
    "org_ref",
    "parent_task_ref",
    "recurrence",
    "trigger",
    "trigger_type",
    "trigger_event",
    "payload",
    "metadata",
    "created_by",
    "created_at",
    "updated_at",
    "executed_at",
    "completed_at",
    "cancelled_at",
    "failed_at",
    "result",
    "error",
    "cancel_reason",
    "job_id",
)


class TaskHistoryEntry(BaseModel):
    """One immutable audit record per lifecycle transition."""

    task_id: str
    action: str
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)
    performed_by: str = "system"

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


# -- Caller input ----------------------------------------------------------------


def _check_trigger_config(trigger: Trigger | None) -> Trigger | None:
    if trigger is None:
        return None
    required = {
        TriggerType.WEBHOOK: "url",
        TriggerType.EVENT: "eventName",
        TriggerType.CONDITION: "expression",
    }[trigger.type]
    if not trigger.config.get(required):
        msg = f"{trigger.type.value} trigger requires config.{required}"
        raise ValueError(msg)
    return trigger


def _check_size(value: dict[str, Any], limit: int, name: str) -> dict[str, Any]:
    if _json_size(value) > limit:
        msg = f"{name} exceeds {limit} bytes"
        raise ValueError(msg)
    return value


class ScheduleTaskInput(BaseModel):
    """Validated arguments for ``TaskScheduler.schedule``.

    ``date`` is either a datetime or free text for the date resolver.
    """

    date: datetime | str
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    owner_ref: str = Field(min_length=1, max_length=MAX_OWNER_REF_LENGTH)
    project_ref: str | None = None
    org_ref: str | None = None
    parent_task_ref: str | None = None
    type: TaskType = TaskType.MANUAL
    recurrence: Recurrence | None = None
    trigger: Trigger | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None

    @field_validator("date")
    @classmethod
    def _non_empty_date(cls, value: datetime | str) -> datetime | str:
        if isinstance(value, str) and not value.strip():
            msg = "Date string cannot be empty"
            raise ValueError(msg)
        return value

    @field_validator("trigger")
    @classmethod
    def _trigger_config(cls, value: Trigger | None) -> Trigger | None:
        return _check_trigger_config(value)

    @field_validator("payload")
    @classmethod
    def _payload_size(cls, value: dict[str, Any]) -> dict[str, Any]:
        return _check_size(value, MAX_PAYLOAD_BYTES, "payload")

    @field_validator("metadata")
    @classmethod
    def _metadata_size(cls, value: dict[str, Any]) -> dict[str, Any]:
        return _check_size(value, MAX_METADATA_BYTES, "metadata")

    @model_validator(mode="after")
    def _type_has_config(self) -> ScheduleTaskInput:
        if self.type == TaskType.RECURRING and self.recurrence is None:
            msg = "recurring tasks require a recurrence"
            raise ValueError(msg)
        if self.type == TaskType.TRIGGER and self.trigger is None:
            msg = "trigger tasks require a trigger"
            raise ValueError(msg)
        return self


class TaskUpdate(BaseModel):
    """Patch accepted by ``TaskScheduler.update_task``. Unset fields are untouched."""

    title: str | None = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    scheduled_at: datetime | str | None = None
    payload: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    recurrence: Recurrence | None = None
    trigger: Trigger | None = None

    @field_validator("trigger")
    @classmethod
    def _trigger_config(cls, value: Trigger | None) -> Trigger | None:
        return _check_trigger_config(value)

    @field_validator("payload")
    @classmethod
    def _payload_size(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        return None if value is None else _check_size(value, MAX_PAYLOAD_BYTES, "payload")

    @field_validator("metadata")
    @classmethod
    def _metadata_size(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        return None if value is None else _check_size(value, MAX_METADATA_BYTES, "metadata")


class UpcomingTasksQuery(BaseModel):
    """Filters for ``TaskScheduler.get_upcoming_tasks``.

    ``from_`` defaults to now at query time. It is aliased to ``from`` so
    callers may pass ``{"from": ..., "to": ...}``.
    """

    model_config = {"populate_by_name": True}

    owner_ref: str | None = None
    project_ref: str | None = None
    org_ref: str | None = None
    from_: datetime | None = Field(default=None, alias="from")
    to: datetime | None = None
    limit: int = Field(default=100, ge=1, le=MAX_TASKS_PER_QUERY)
    include_completed: bool = False
    include_recurring: bool = True
    status: TaskStatus | None = None

    @field_validator("from_", "to")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)


class JobResult(BaseModel):
    """Completion report delivered by the external job system."""

    status: str
    result: Any = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"
