"""Tests for FailureNotifier."""

import pytest

from cadence.notifications.channels import NotificationChannel
from cadence.notifications.notifier import FailureNotifier

# -- Helpers -----------------------------------------------------------------


class FakeChannel:
    """Records what it was asked to send."""

    def __init__(self, channel_name: str = "fake", *, delivers: bool = True) -> None:
        self._name = channel_name
        self._delivers = delivers
        self.sent: list[tuple[str, str]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def send(self, scope: str, message: str) -> bool:
        self.sent.append((scope, message))
        return self._delivers

    async def close(self) -> None:
        self.closed = True


class BrokenChannel(FakeChannel):
    async def send(self, scope: str, message: str) -> bool:
        raise ConnectionError("endpoint unreachable")


# -- Construction ------------------------------------------------------------


def test_fake_channel_satisfies_protocol() -> None:
    assert isinstance(FakeChannel(), NotificationChannel)


def test_channel_names() -> None:
    notifier = FailureNotifier([FakeChannel("ops"), FakeChannel("alerts")])
    assert notifier.channel_names == ["ops", "alerts"]


def test_duplicate_channel_names_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        FailureNotifier([FakeChannel("webhook"), FakeChannel("webhook")])


def test_instances_are_independent() -> None:
    assert FailureNotifier().channel_names == []
    assert FailureNotifier([FakeChannel()]).channel_names == ["fake"]


# -- send --------------------------------------------------------------------


async def test_send_reaches_every_channel() -> None:
    ops, alerts = FakeChannel("ops"), FakeChannel("alerts")
    notifier = FailureNotifier([ops, alerts])

    assert await notifier.send("acme", "task failed") is True
    assert ops.sent == [("acme", "task failed")]
    assert alerts.sent == [("acme", "task failed")]


async def test_send_without_channels_returns_false() -> None:
    assert await FailureNotifier().send("acme", "task failed") is False


async def test_send_reports_undelivered() -> None:
    notifier = FailureNotifier([FakeChannel("webhook", delivers=False)])
    assert await notifier.send("acme", "task failed") is False


async def test_raising_channel_does_not_block_others() -> None:
    healthy = FakeChannel("ops")
    notifier = FailureNotifier([BrokenChannel("webhook"), healthy])

    assert await notifier.send("acme", "task failed") is True
    assert healthy.sent == [("acme", "task failed")]


async def test_close_closes_channels() -> None:
    ops, alerts = FakeChannel("ops"), FakeChannel("alerts")
    await FailureNotifier([ops, alerts]).close()
    assert ops.closed is True
    assert alerts.closed is True
