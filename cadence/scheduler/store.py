"""TaskStore — aiosqlite persistence for tasks and their history.

Every status transition is a single conditional ``UPDATE ... WHERE id = ?
AND status IN (...)``. The returned row count is the only signal of who won
a race between scheduler processes sharing the database file.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from cadence.config import settings
from cadence.scheduler.models import (
    TASK_COLUMNS,
    Task,
    TaskHistoryEntry,
    TaskStatus,
    TaskType,
    Trigger,
    make_task_id,
    to_db_json,
    to_db_time,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    owner_ref TEXT NOT NULL,
    project_ref TEXT,
    org_ref TEXT,
    parent_task_ref TEXT,
    recurrence TEXT,
    trigger TEXT,
    trigger_type TEXT,
    trigger_event TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    executed_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT,
    failed_at TEXT,
    result TEXT,
    error TEXT,
    cancel_reason TEXT,
    job_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_tasks_status_scheduled
    ON scheduled_tasks (status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_tasks_job_id ON scheduled_tasks (job_id);
CREATE TABLE IF NOT EXISTS task_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    action TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    performed_by TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_task ON task_history (task_id);
"""

_SELECT = f"SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks"  # noqa: S608

_TIME_FIELDS = {
    "scheduled_at",
    "created_at",
    "updated_at",
    "executed_at",
    "completed_at",
    "cancelled_at",
    "failed_at",
}
_JSON_FIELDS = {"recurrence", "payload", "metadata", "result"}
_PLAIN_FIELDS = {
    "title",
    "description",
    "type",
    "status",
    "owner_ref",
    "project_ref",
    "org_ref",
    "parent_task_ref",
    "created_by",
    "error",
    "cancel_reason",
    "job_id",
}


@dataclass
class TaskQuery:
    """Filter over ``scheduled_tasks``. Unset fields do not constrain.

    Time bounds: ``scheduled_from``/``scheduled_to`` are inclusive,
    ``scheduled_after`` is strict.
    """

    owner_ref: str | None = None
    project_ref: str | None = None
    org_ref: str | None = None
    statuses: Collection[TaskStatus] | None = None
    exclude_statuses: Collection[TaskStatus] | None = None
    types: Collection[TaskType] | None = None
    exclude_types: Collection[TaskType] | None = None
    scheduled_from: datetime | None = None
    scheduled_to: datetime | None = None
    scheduled_after: datetime | None = None
    trigger_type: str | None = None
    trigger_event: str | None = None
    executed_before: datetime | None = None
    failed_since: datetime | None = None
    completed_since: datetime | None = None

    def to_sql(self) -> tuple[str, list[Any]]:
        """Return a ``WHERE`` clause (possibly empty) and its parameters."""
        clauses: list[str] = []
        params: list[Any] = []

        for column in ("owner_ref", "project_ref", "org_ref", "trigger_type", "trigger_event"):
            value = getattr(self, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        for column, values, negate in (
            ("status", self.statuses, False),
            ("status", self.exclude_statuses, True),
            ("type", self.types, False),
            ("type", self.exclude_types, True),
        ):
            if values is not None:
                clause, values_params = _in_clause(column, values, negate=negate)
                clauses.append(clause)
                params.extend(values_params)

        for column, op, value in (
            ("scheduled_at", ">=", self.scheduled_from),
            ("scheduled_at", "<=", self.scheduled_to),
            ("scheduled_at", ">", self.scheduled_after),
            ("executed_at", "<", self.executed_before),
            ("failed_at", ">=", self.failed_since),
            ("completed_at", ">=", self.completed_since),
        ):
            if value is not None:
                clauses.append(f"{column} {op} ?")
                params.append(to_db_time(value))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params


def _in_clause(column: str, values: Collection[Any], *, negate: bool = False) -> tuple[str, list]:
    values = [str(v) for v in values]
    if not values:
        return ("1 = 1" if negate else "1 = 0"), []
    placeholders = ", ".join("?" for _ in values)
    op = "NOT IN" if negate else "IN"
    return f"{column} {op} ({placeholders})", values


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Map model field updates to column values."""
    columns: dict[str, Any] = {}
    for name, value in fields.items():
        if name in _TIME_FIELDS:
            columns[name] = to_db_time(value)
        elif name in _JSON_FIELDS:
            columns[name] = to_db_json(value)
        elif name == "trigger":
            trigger = Trigger.model_validate(value) if value is not None else None
            columns["trigger"] = to_db_json(trigger)
            columns["trigger_type"] = trigger.type.value if trigger else None
            columns["trigger_event"] = trigger.event_name if trigger else None
        elif name in _PLAIN_FIELDS:
            columns[name] = value.value if hasattr(value, "value") else value
        else:
            msg = f"Unknown task field: {name}"
            raise KeyError(msg)
    return columns


class TaskStore:
    """Persists tasks and history in SQLite.

    Defaults to ``settings.database_path``. Pass an explicit *db_path* for
    test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        await db.execute("PRAGMA busy_timeout=5000")
        if not self._initialised:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(_CREATE_TABLES)
            await db.commit()
            self._initialised = True
        return db

    # -- Tasks -----------------------------------------------------------------

    async def add_task(self, task: Task) -> Task:
        """Insert a new task, assigning an id if it has none. Returns the stored task."""
        if not task.id:
            task = task.model_copy(update={"id": make_task_id()})
        db = await self._connect()
        try:
            placeholders = ", ".join("?" for _ in TASK_COLUMNS)
            await db.execute(
                f"INSERT INTO scheduled_tasks ({', '.join(TASK_COLUMNS)}) "  # noqa: S608
                f"VALUES ({placeholders})",
                task.to_row(),
            )
            await db.commit()
            logger.info("Added task: %s (%s)", task.title, task.id)
            return task
        finally:
            await db.close()

    async def get_task(self, task_id: str) -> Task | None:
        """Fetch a task by ID, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(f"{_SELECT} WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
            return Task.from_row(tuple(row)) if row else None
        finally:
            await db.close()

    async def get_task_by_job_id(self, job_id: str) -> Task | None:
        """Fetch the task correlated with an external job."""
        db = await self._connect()
        try:
            cursor = await db.execute(f"{_SELECT} WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
            return Task.from_row(tuple(row)) if row else None
        finally:
            await db.close()

    async def find_tasks(self, query: TaskQuery, limit: int | None = None) -> list[Task]:
        """Return tasks matching *query*, ordered by ``scheduled_at`` ascending."""
        where, params = query.to_sql()
        sql = f"{_SELECT}{where} ORDER BY scheduled_at ASC, created_at ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [Task.from_row(tuple(row)) for row in rows]
        finally:
            await db.close()

    async def count_tasks(self, query: TaskQuery) -> int:
        where, params = query.to_sql()
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM scheduled_tasks{where}",  # noqa: S608
                params,
            )
            row = await cursor.fetchone()
            return int(row[0]) if row else 0
        finally:
            await db.close()

    async def update_task(
        self,
        task_id: str,
        fields: dict[str, Any],
        *,
        expected_status: Collection[TaskStatus] | None = None,
        excluded_status: Collection[TaskStatus] | None = None,
    ) -> int:
        """Atomically set *fields* on a task. Returns the matched row count.

        *expected_status* / *excluded_status* make the update conditional on
        the task's current status; a zero return means either the task does
        not exist or it is not in an acceptable status.
        """
        columns = _column_values(fields)
        if not columns:
            msg = "update_task requires at least one field"
            raise ValueError(msg)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params: list[Any] = [*columns.values(), task_id]
        sql = f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?"  # noqa: S608
        for values, negate in ((expected_status, False), (excluded_status, True)):
            if values is not None:
                clause, clause_params = _in_clause("status", values, negate=negate)
                sql += f" AND {clause}"
                params.extend(clause_params)

        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task row. Returns True if a row was removed."""
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
            await db.commit()
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("Deleted task: %s", task_id)
            return deleted
        finally:
            await db.close()

    # -- History ---------------------------------------------------------------

    async def add_history(self, entry: TaskHistoryEntry) -> None:
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO task_history (task_id, action, timestamp, details, performed_by)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.task_id,
                    entry.action,
                    to_db_time(entry.timestamp),
                    to_db_json(entry.details),
                    entry.performed_by,
                ),
            )
            await db.commit()
        finally:
            await db.close()

    async def list_history(self, task_id: str) -> list[TaskHistoryEntry]:
        """Return a task's history, oldest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT task_id, action, timestamp, details, performed_by "
                "FROM task_history WHERE task_id = ? ORDER BY id",
                (task_id,),
            )
            rows = await cursor.fetchall()
            return [
                TaskHistoryEntry(
                    task_id=row[0],
                    action=row[1],
                    timestamp=row[2],
                    details=json.loads(row[3]),
                    performed_by=row[4],
                )
                for row in rows
            ]
        finally:
            await db.close()

    async def delete_history(self, task_id: str) -> int:
        """Purge a task's history. Returns the number of entries removed."""
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM task_history WHERE task_id = ?", (task_id,))
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()
