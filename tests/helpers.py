"""Test doubles shared across test modules."""

from datetime import UTC, datetime, timedelta

from cadence.scheduler.models import as_utc

# A Tuesday.
T0 = datetime(2030, 1, 15, 8, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock for the scheduler."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StubResolver:
    """Date resolver with a fixed vocabulary, anchored at the fake clock."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock

    def parse(self, text: str) -> datetime | None:
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        phrases = {
            "tomorrow": midnight + timedelta(days=1, hours=9),
            "tomorrow at 10am": midnight + timedelta(days=1, hours=10),
            "in 2 hours": now + timedelta(hours=2),
            "yesterday": midnight - timedelta(hours=15),
        }
        value = phrases.get(text.strip().lower())
        return as_utc(value) if value else None


def task_input(**overrides) -> dict:
    """Minimal valid ``schedule`` arguments, due one hour after ``T0``."""
    data = {
        "date": T0 + timedelta(hours=1),
        "title": "Deploy site",
        "owner_ref": "deploy-agent",
    }
    data.update(overrides)
    return data
