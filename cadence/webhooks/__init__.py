"""HTTP surface for job callbacks, trigger events, and queue status."""

from cadence.webhooks.server import WebhookServer, create_web_app

__all__ = ["WebhookServer", "create_web_app"]
