"""Tests for application wiring."""

from pathlib import Path

import pytest

from cadence.app import CadenceApp
from cadence.scheduler.store import TaskStore


@pytest.fixture
def app(tmp_path: Path) -> CadenceApp:
    return CadenceApp.build(TaskStore(db_path=tmp_path / "app.db"))


async def test_build_wires_components(app: CadenceApp) -> None:
    assert app.executor.registry is app.registry
    assert app.queue.running is False
    assert app.server.running is False


async def test_start_without_auto_start_or_secret(app: CadenceApp) -> None:
    await app.start()
    try:
        assert app.queue.running is False
        assert app.server.running is False
    finally:
        await app.stop()


async def test_auto_start_runs_queue(app: CadenceApp, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("cadence.config.settings.queue_auto_start", True)
    await app.start()
    try:
        assert app.queue.running is True
    finally:
        await app.stop()
    assert app.queue.running is False


def test_failure_webhook_channel_registered(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("cadence.config.settings.failure_webhook_url", "https://hooks.example/x")
    app = CadenceApp.build(TaskStore(db_path=tmp_path / "app.db"))
    assert app.notifier.channel_names == ["webhook"]


def test_no_channels_without_failure_webhook(app: CadenceApp) -> None:
    assert app.notifier.channel_names == []


def test_apps_do_not_share_state(tmp_path: Path) -> None:
    first = CadenceApp.build(TaskStore(db_path=tmp_path / "a.db"))
    second = CadenceApp.build(TaskStore(db_path=tmp_path / "b.db"))
    assert first.notifier is not second.notifier
    assert first.registry is not second.registry
    assert first.scheduler.store is not second.scheduler.store
