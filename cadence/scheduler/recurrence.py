"""Recurrence expansion — turns a task's recurrence into concrete occurrences.

Pure functions, no I/O. Rule parsing sits behind :class:`RecurrenceParser`
so another grammar can replace RFC 5545 without touching the scheduler.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from dateutil import rrule

from cadence.errors import RecurrenceError
from cadence.scheduler.models import Recurrence, RecurrencePattern, as_utc

if TYPE_CHECKING:
    from cadence.scheduler.models import Task

# Look-ahead used when looking for the next occurrence of a completed task.
NEXT_OCCURRENCE_HORIZON = timedelta(days=365)

_FREQUENCIES = {
    RecurrencePattern.DAILY: rrule.DAILY,
    RecurrencePattern.WEEKLY: rrule.WEEKLY,
    RecurrencePattern.MONTHLY: rrule.MONTHLY,
}


class RuleSet(Protocol):
    """The subset of ``dateutil.rrule.rrule`` the engine relies on."""

    def xafter(
        self, dt: datetime, count: int | None = None, inc: bool = False
    ) -> Iterator[datetime]: ...


class RecurrenceParser(Protocol):
    """Validates custom rule strings and builds occurrence generators."""

    def validate(self, rule: str) -> None:
        """Raise ``RecurrenceError`` if *rule* cannot be parsed."""
        ...

    def build(self, recurrence: Recurrence, dtstart: datetime) -> RuleSet: ...


def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


class RRuleParser:
    """RFC 5545 recurrence rules via ``python-dateutil``.

    Rules are evaluated on naive UTC datetimes (``ignoretz``), which keeps
    DTSTART/UNTIL handling uniform whatever the rule string carries. A
    custom rule without its own DTSTART is anchored at the task's
    ``scheduled_at``.
    """

    def _parse(self, rule: str, dtstart: datetime) -> RuleSet:
        try:
            return rrule.rrulestr(rule, dtstart=dtstart, forceset=True, ignoretz=True)
        except (ValueError, TypeError) as exc:
            msg = f"Invalid RRULE format: {exc}"
            raise RecurrenceError(msg) from exc

    def validate(self, rule: str) -> None:
        self._parse(rule, _naive_utc(datetime.now(UTC)))

    def build(self, recurrence: Recurrence, dtstart: datetime) -> RuleSet:
        dtstart = _naive_utc(dtstart)
        if recurrence.custom_rule:
            return self._parse(recurrence.custom_rule, dtstart)

        kwargs: dict = {
            "interval": max(1, recurrence.interval),
            "dtstart": dtstart,
        }
        if recurrence.end_date is not None:
            kwargs["until"] = _naive_utc(recurrence.end_date)
        if recurrence.days_of_week and recurrence.pattern == RecurrencePattern.WEEKLY:
            kwargs["byweekday"] = [d % 7 for d in recurrence.days_of_week]
        if recurrence.day_of_month and recurrence.pattern == RecurrencePattern.MONTHLY:
            kwargs["bymonthday"] = recurrence.day_of_month
        freq = _FREQUENCIES.get(recurrence.pattern, rrule.DAILY)
        return rrule.rrule(freq, **kwargs)


default_parser = RRuleParser()


def normalize_recurrence(
    recurrence: Recurrence, parser: RecurrenceParser = default_parser
) -> Recurrence:
    """Validate a recurrence at write time and return a cleaned copy.

    Raises:
        RecurrenceError: On out-of-range values, a weekday or month-day field
            used with the wrong pattern, or an unparsable custom rule.
    """
    if recurrence.days_of_week is not None:
        if any(not isinstance(d, int) or d < 0 or d > 6 for d in recurrence.days_of_week):
            msg = "days_of_week must be a list of numbers 0-6"
            raise RecurrenceError(msg)
        if recurrence.pattern != RecurrencePattern.WEEKLY:
            msg = "days_of_week is only valid for weekly recurrences"
            raise RecurrenceError(msg)
    if recurrence.day_of_month is not None:
        if not 1 <= recurrence.day_of_month <= 31:
            msg = "day_of_month must be between 1 and 31"
            raise RecurrenceError(msg)
        if recurrence.pattern != RecurrencePattern.MONTHLY:
            msg = "day_of_month is only valid for monthly recurrences"
            raise RecurrenceError(msg)
    # A custom pattern without a rule recurs daily.
    if recurrence.custom_rule is not None:
        parser.validate(recurrence.custom_rule)

    return recurrence.model_copy(
        update={
            "interval": max(1, recurrence.interval),
            "days_of_week": sorted(set(recurrence.days_of_week))
            if recurrence.days_of_week
            else None,
        }
    )


def occurrences(
    task: Task,
    start: datetime,
    end: datetime,
    parser: RecurrenceParser = default_parser,
) -> Iterator[datetime]:
    """Yield occurrence times of *task* within ``[start, end]`` (inclusive).

    Lazy and restartable: the same inputs always produce the same sequence.
    """
    if task.recurrence is None:
        return
    start, end = _naive_utc(start), _naive_utc(end)
    if end < start:
        return
    rule = parser.build(task.recurrence, task.scheduled_at)
    for occurrence in rule.xafter(start, inc=True):
        if occurrence > end:
            return
        yield occurrence.replace(tzinfo=UTC)


def next_occurrence(
    task: Task,
    now: datetime,
    horizon: timedelta = NEXT_OCCURRENCE_HORIZON,
    parser: RecurrenceParser = default_parser,
) -> datetime | None:
    """First occurrence strictly after *now* and after the task's own slot.

    A task completed ahead of its ``scheduled_at`` still advances by one
    interval. Searches within *horizon*; None if there is none.
    """
    after = max(as_utc(now), task.scheduled_at)
    for occurrence in occurrences(task, after, after + horizon, parser):
        if occurrence > after:
            return occurrence
    return None


def expand_virtual_occurrences(
    tasks: Iterable[Task],
    start: datetime,
    end: datetime,
    parser: RecurrenceParser = default_parser,
) -> list[Task]:
    """Project recurring tasks into per-occurrence, read-only copies.

    Each copy gets the synthetic id ``"<id>_<epoch ms>"``; none are persisted.
    Non-recurring tasks are skipped.
    """
    expanded: list[Task] = []
    for task in tasks:
        if not task.is_recurring:
            continue
        for occurrence in occurrences(task, start, end, parser):
            epoch_ms = int(occurrence.timestamp() * 1000)
            expanded.append(
                task.model_copy(
                    update={
                        "id": f"{task.id}_{epoch_ms}",
                        "scheduled_at": occurrence,
                        "is_recurrence_instance": True,
                        "original_task_id": task.id,
                    }
                )
            )
    return expanded
