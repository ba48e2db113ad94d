"""Lightweight async HTTP server for job callbacks and trigger events.

Runs alongside the task queue in the same asyncio event loop. Uses
aiohttp's AppRunner/TCPSite for non-blocking start/stop.

Every route except ``/health`` requires the shared ``X-Webhook-Secret``
header to match ``WEBHOOK_SECRET``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from cadence.config import settings
from cadence.errors import SchedulerError
from cadence.scheduler.models import JobResult

if TYPE_CHECKING:
    from cadence.scheduler.executor import TaskExecutor
    from cadence.scheduler.queue import TaskQueue

logger = logging.getLogger(__name__)

EXECUTOR_KEY = web.AppKey("executor", object)
QUEUE_KEY = web.AppKey("queue", object)
BACKGROUND_KEY = web.AppKey("background", set)


def _authorized(request: web.Request) -> bool:
    secret = request.headers.get("X-Webhook-Secret", "")
    if not settings.webhook_secret or secret != settings.webhook_secret:
        logger.warning("Request rejected: invalid secret (path=%s)", request.path)
        return False
    return True


def _unauthorized() -> web.Response:
    return web.json_response({"error": "unauthorized"}, status=401)


def _error_response(exc: SchedulerError) -> web.Response:
    body: dict[str, Any] = {"error": exc.code, "message": exc.message}
    details = getattr(exc, "details", None)
    if details:
        body["details"] = details
    return web.json_response(body, status=exc.status_code)


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    return web.json_response({"status": "ok"})


async def _handle_job_callback(request: web.Request) -> web.Response:
    """POST /jobs/{job_id}/callback — settle the task behind an external job."""
    if not _authorized(request):
        return _unauthorized()

    job_id = request.match_info["job_id"]
    payload = await _read_json(request)
    if payload is None:
        logger.warning("Job callback bad request: invalid JSON (job=%s)", job_id)
        return web.json_response({"error": "invalid JSON"}, status=400)

    try:
        result = JobResult.model_validate(payload)
    except PydanticValidationError as exc:
        return web.json_response(
            {"error": "invalid job result", "details": exc.errors(include_url=False)},
            status=400,
        )

    executor: TaskExecutor = request.app[EXECUTOR_KEY]
    try:
        settled = await executor.handle_job_completion(job_id, result)
    except SchedulerError as exc:
        return _error_response(exc)

    logger.info("Job callback: job=%s status=%s settled=%s", job_id, result.status, settled)
    return web.json_response({"ok": True, "settled": settled})


async def _handle_event(request: web.Request) -> web.Response:
    """POST /events/{event_name} — fire trigger tasks listening for the event.

    Returns 202 immediately; matching tasks are processed in the background.
    """
    if not _authorized(request):
        return _unauthorized()

    event_name = request.match_info["event_name"]
    payload = await _read_json(request)
    if payload is None:
        logger.warning("Event bad request: invalid JSON (event=%s)", event_name)
        return web.json_response({"error": "invalid JSON"}, status=400)

    logger.info("Event received: %s (keys=%s)", event_name, list(payload.keys())[:10])

    executor: TaskExecutor = request.app[EXECUTOR_KEY]
    background: set[asyncio.Task] = request.app[BACKGROUND_KEY]
    task = asyncio.create_task(_run_triggers(executor, event_name, payload))
    background.add(task)
    task.add_done_callback(background.discard)

    return web.json_response({"ok": True}, status=202)


async def _run_triggers(executor: TaskExecutor, event_name: str, event_data: Any) -> None:
    """Process trigger tasks with error logging."""
    try:
        await executor.process_trigger_tasks(event_name, event_data)
    except Exception:
        logger.exception("Trigger processing failed: event=%s", event_name)


async def _queue_status(request: web.Request) -> web.Response:
    """GET /queue/status — queue configuration and task counts."""
    if not _authorized(request):
        return _unauthorized()

    queue: TaskQueue | None = request.app[QUEUE_KEY]
    if queue is None:
        return web.json_response({"error": "queue not configured"}, status=404)
    status = await queue.status()
    return web.json_response(dataclasses.asdict(status))


def create_web_app(executor: TaskExecutor, queue: TaskQueue | None = None) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application()
    app[EXECUTOR_KEY] = executor
    app[QUEUE_KEY] = queue
    app[BACKGROUND_KEY] = set()
    app.router.add_get("/health", _health)
    app.router.add_post("/jobs/{job_id}/callback", _handle_job_callback)
    app.router.add_post("/events/{event_name}", _handle_event)
    app.router.add_get("/queue/status", _queue_status)
    return app


class WebhookServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(
        self,
        executor: TaskExecutor,
        queue: TaskQueue | None = None,
        port: int | None = None,
    ) -> None:
        self._executor = executor
        self._queue = queue
        self.port = port or settings.webhook_port
        self._runner: web.AppRunner | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Start listening. Disabled when WEBHOOK_SECRET is empty."""
        if not settings.webhook_secret:
            logger.warning("WEBHOOK_SECRET empty — webhook server disabled")
            return

        app = create_web_app(self._executor, self._queue)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)  # noqa: S104
        await site.start()
        logger.info("Webhook server listening on port %d", self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Webhook server stopped")
