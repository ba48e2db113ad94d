"""Shared test fixtures."""

from pathlib import Path

import pytest
from helpers import FakeClock, StubResolver

from cadence.scheduler.service import TaskScheduler
from cadence.scheduler.store import TaskStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(tmp_path: Path) -> TaskStore:
    """Create a TaskStore backed by a temp database."""
    return TaskStore(db_path=tmp_path / "test.db")


@pytest.fixture
def scheduler(store: TaskStore, clock: FakeClock) -> TaskScheduler:
    return TaskScheduler(
        store,
        date_resolver=StubResolver(clock),
        clock=clock,
        retry_delay=0,
    )

