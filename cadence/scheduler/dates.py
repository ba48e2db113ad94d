"""Date resolution — turns caller-supplied dates into aware UTC datetimes."""

from __future__ import annotations

import logging
import zoneinfo
from datetime import datetime
from typing import Protocol

import dateparser

from cadence.config import settings
from cadence.errors import InvalidDateError
from cadence.scheduler.models import as_utc

logger = logging.getLogger(__name__)


class DateResolver(Protocol):
    """Parses free text such as ``"tomorrow at 2pm"``. Returns None when it can't."""

    def parse(self, text: str) -> datetime | None: ...


class NaturalDateResolver:
    """``dateparser``-backed resolver.

    Relative expressions are interpreted in *timezone* and resolved toward
    the future ("friday" means the next Friday, not the last one).
    """

    def __init__(self, timezone: str | None = None) -> None:
        self._timezone = timezone or settings.scheduler_timezone

    def parse(self, text: str) -> datetime | None:
        parsed = dateparser.parse(
            text,
            settings={
                "TIMEZONE": self._timezone,
                "TO_TIMEZONE": "UTC",
                "RETURN_AS_TIMEZONE_AWARE": True,
                "PREFER_DATES_FROM": "future",
            },
        )
        if parsed is None:
            logger.debug("Could not resolve date: %r", text)
        return parsed


def localize(value: datetime, timezone: str | None = None) -> datetime:
    """Attach the scheduler timezone to naive datetimes, then convert to UTC."""
    if value.tzinfo is None:
        tz = zoneinfo.ZoneInfo(timezone or settings.scheduler_timezone)
        value = value.replace(tzinfo=tz)
    return as_utc(value)


def resolve_date(value: datetime | str, resolver: DateResolver) -> datetime:
    """Resolve a datetime or natural-language string to an aware UTC datetime.

    Raises:
        InvalidDateError: If *value* is neither a datetime nor resolvable text.
    """
    if isinstance(value, datetime):
        return localize(value)
    if isinstance(value, str):
        parsed = resolver.parse(value)
        if parsed is None:
            raise InvalidDateError(value)
        return localize(parsed)
    raise InvalidDateError("date must be a string or datetime")
