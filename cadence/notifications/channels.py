"""NotificationChannel protocol — interface for failure notice delivery channels."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class NotificationChannel(Protocol):
    """Protocol that all notification channels must satisfy."""

    @property
    def name(self) -> str:
        """Unique channel identifier (e.g. 'webhook')."""
        ...

    async def send(self, scope: str, message: str) -> bool:
        """Deliver *message* to the audience identified by *scope*. Returns True on success."""
        ...

    async def close(self) -> None:
        """Release any held connections."""
        ...
