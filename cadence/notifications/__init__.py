"""Failure notification channels."""

from cadence.notifications.channels import NotificationChannel
from cadence.notifications.notifier import FailureNotifier
from cadence.notifications.webhook_channel import WebhookChannel

__all__ = [
    "FailureNotifier",
    "NotificationChannel",
    "WebhookChannel",
]
