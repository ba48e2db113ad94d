"""Tests for TaskExecutor — local execution, job dispatch, and triggers."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from helpers import T0, FakeClock, task_input

from cadence.errors import NotFoundError, ValidationError
from cadence.scheduler.executor import ExecutorRegistry, TaskExecutor
from cadence.scheduler.jobs import JobRecord, JobTypeRegistry
from cadence.scheduler.models import Task, TaskStatus
from cadence.scheduler.service import TaskScheduler


@pytest.fixture
def notifier() -> AsyncMock:
    r = AsyncMock()
    r.send = AsyncMock(return_value=True)
    return r


@pytest.fixture
def job_client() -> AsyncMock:
    client = AsyncMock()
    client.create_job = AsyncMock(return_value=JobRecord(id="job-1", job_type="repo_deploy"))
    return client


@pytest.fixture
def registry() -> ExecutorRegistry:
    return ExecutorRegistry()


@pytest.fixture
def executor(
    scheduler: TaskScheduler,
    registry: ExecutorRegistry,
    job_client: AsyncMock,
    notifier: AsyncMock,
) -> TaskExecutor:
    return TaskExecutor(
        scheduler,
        registry,
        job_client=job_client,
        job_types=JobTypeRegistry({"deploy-agent": "repo_deploy"}),
        notifier=notifier,
        task_timeout_ms=1000,
    )


async def _status(scheduler: TaskScheduler, task_id: str) -> TaskStatus:
    task = await scheduler.get_task(task_id)
    assert task is not None
    return task.status


# -- ExecutorRegistry ----------------------------------------------------------


def test_registry_register_and_get(registry: ExecutorRegistry) -> None:
    fn = AsyncMock()
    registry.register("build-agent", fn)
    assert registry.get("build-agent") is fn
    assert "build-agent" in registry
    assert registry.list_owners() == ["build-agent"]


def test_registry_rejects_non_callable(registry: ExecutorRegistry) -> None:
    with pytest.raises(TypeError):
        registry.register("build-agent", "not a function")


def test_registry_unregister(registry: ExecutorRegistry) -> None:
    registry.register("build-agent", AsyncMock())
    assert registry.unregister("build-agent") is True
    assert registry.unregister("build-agent") is False
    assert registry.get("build-agent") is None


# -- Local execution -----------------------------------------------------------


async def test_local_executor_success(
    executor: TaskExecutor, scheduler: TaskScheduler, registry: ExecutorRegistry
) -> None:
    fn = AsyncMock(return_value={"built": True})
    registry.register("build-agent", fn)
    task = await scheduler.schedule(task_input(owner_ref="build-agent"))

    outcome = await executor.process(task)

    assert outcome.claimed is True
    assert outcome.success is True
    assert outcome.result == {"built": True}
    assert outcome.dispatched is False
    fn.assert_awaited_once()
    stored = await scheduler.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result == {"built": True}


async def test_local_executor_failure(
    executor: TaskExecutor,
    scheduler: TaskScheduler,
    registry: ExecutorRegistry,
    notifier: AsyncMock,
) -> None:
    registry.register("build-agent", AsyncMock(side_effect=RuntimeError("compiler crashed")))
    task = await scheduler.schedule(task_input(owner_ref="build-agent", org_ref="acme"))

    outcome = await executor.process(task)

    assert outcome.claimed is True
    assert outcome.success is False
    assert outcome.error == "compiler crashed"
    stored = await scheduler.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.error == "compiler crashed"
    notifier.send.assert_awaited_once()
    scope, message = notifier.send.call_args.args
    assert scope == "acme"
    assert "compiler crashed" in message


async def test_local_executor_timeout(
    executor: TaskExecutor, scheduler: TaskScheduler, registry: ExecutorRegistry
) -> None:
    async def slow(task: Task) -> None:
        await asyncio.sleep(5)

    registry.register("build-agent", slow)
    task = await scheduler.schedule(task_input(owner_ref="build-agent"))

    outcome = await executor.process(task)

    assert outcome.success is False
    stored = await scheduler.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.error == f"Task {task.id} timed out after 1000ms"


async def test_plain_function_executor(
    executor: TaskExecutor, scheduler: TaskScheduler, registry: ExecutorRegistry
) -> None:
    registry.register("build-agent", lambda task: {"ok": True})
    task = await scheduler.schedule(task_input(owner_ref="build-agent"))

    outcome = await executor.process(task)

    assert outcome.success is True
    assert outcome.result == {"ok": True}
    stored = await scheduler.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result == {"ok": True}


async def test_notification_failure_is_swallowed(
    executor: TaskExecutor,
    scheduler: TaskScheduler,
    registry: ExecutorRegistry,
    notifier: AsyncMock,
) -> None:
    notifier.send.side_effect = RuntimeError("webhook down")
    registry.register("build-agent", AsyncMock(side_effect=RuntimeError("boom")))
    task = await scheduler.schedule(task_input(owner_ref="build-agent"))

    outcome = await executor.process(task)
    assert outcome.claimed is True
    assert await _status(scheduler, task.id) == TaskStatus.FAILED


async def test_lost_claim_is_skipped(
    executor: TaskExecutor, scheduler: TaskScheduler, registry: ExecutorRegistry
) -> None:
    fn = AsyncMock()
    registry.register("build-agent", fn)
    task = await scheduler.schedule(task_input(owner_ref="build-agent"))
    await scheduler.start_task(task.id, "other-worker")

    outcome = await executor.process(task)

    assert outcome.claimed is False
    fn.assert_not_awaited()
    assert await _status(scheduler, task.id) == TaskStatus.RUNNING


async def test_recurring_task_schedules_successor(
    executor: TaskExecutor,
    scheduler: TaskScheduler,
    registry: ExecutorRegistry,
    clock: FakeClock,
) -> None:
    registry.register("build-agent", AsyncMock(return_value=None))
    task = await scheduler.schedule(
        task_input(owner_ref="build-agent", recurrence={"pattern": "daily"})
    )
    clock.advance(hours=1)

    await executor.process(task)

    upcoming = await scheduler.get_upcoming_tasks({"include_recurring": False})
    assert len(upcoming) == 1
    assert upcoming[0].scheduled_at == T0 + timedelta(days=1, hours=1)
    assert upcoming[0].metadata["previous_task_id"] == task.id


# -- Job dispatch --------------------------------------------------------------


async def test_dispatch_then_callback_completes(
    executor: TaskExecutor, scheduler: TaskScheduler, job_client: AsyncMock
) -> None:
    task = await scheduler.schedule(task_input(payload={"repo": "site"}, project_ref="p1"))

    outcome = await executor.process(task)

    assert outcome.dispatched is True
    assert outcome.job_id == "job-1"
    job_type, job_input, metadata = job_client.create_job.call_args.args
    assert job_type == "repo_deploy"
    assert job_input == {"taskId": task.id, "ownerRef": "deploy-agent", "repo": "site"}
    assert metadata["scheduledTaskId"] == task.id
    assert metadata["projectRef"] == "p1"

    dispatched = await scheduler.get_task(task.id)
    assert dispatched is not None
    assert dispatched.status == TaskStatus.RUNNING
    assert dispatched.job_id == "job-1"

    settled = await executor.handle_job_completion(
        "job-1", {"status": "completed", "result": {"url": "https://site.example"}}
    )

    assert settled is True
    done = await scheduler.get_task(task.id)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert done.result == {"url": "https://site.example"}


async def test_job_failure_callback(
    executor: TaskExecutor, scheduler: TaskScheduler, notifier: AsyncMock
) -> None:
    task = await scheduler.schedule(task_input())
    await executor.process(task)

    settled = await executor.handle_job_completion("job-1", {"status": "failed"})

    assert settled is True
    failed = await scheduler.get_task(task.id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.error == "Job failed"
    notifier.send.assert_awaited_once()


async def test_duplicate_callback_is_ignored(
    executor: TaskExecutor, scheduler: TaskScheduler
) -> None:
    task = await scheduler.schedule(task_input())
    await executor.process(task)
    assert await executor.handle_job_completion("job-1", {"status": "completed"}) is True
    assert await executor.handle_job_completion("job-1", {"status": "failed"}) is False
    assert await _status(scheduler, task.id) == TaskStatus.COMPLETED


async def test_callback_store_error_is_logged(
    executor: TaskExecutor, scheduler: TaskScheduler
) -> None:
    task = await scheduler.schedule(task_input())
    await executor.process(task)

    with patch.object(
        scheduler, "complete_task", AsyncMock(side_effect=RuntimeError("database is locked"))
    ):
        settled = await executor.handle_job_completion("job-1", {"status": "completed"})

    assert settled is False
    assert await _status(scheduler, task.id) == TaskStatus.RUNNING


async def test_callback_for_unknown_job(executor: TaskExecutor) -> None:
    assert await executor.handle_job_completion("job-404", {"status": "completed"}) is False


async def test_no_executor_and_no_mapping_fails(
    executor: TaskExecutor, scheduler: TaskScheduler, job_client: AsyncMock
) -> None:
    task = await scheduler.schedule(task_input(owner_ref="mystery-agent"))

    outcome = await executor.process(task)

    assert outcome.success is False
    job_client.create_job.assert_not_awaited()
    stored = await scheduler.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert "mystery-agent" in (stored.error or "")


async def test_job_client_error_fails_task(
    executor: TaskExecutor, scheduler: TaskScheduler, job_client: AsyncMock
) -> None:
    job_client.create_job.side_effect = ConnectionError("job service unreachable")
    task = await scheduler.schedule(task_input())

    outcome = await executor.process(task)

    assert outcome.success is False
    assert await _status(scheduler, task.id) == TaskStatus.FAILED


# -- execute_manually ----------------------------------------------------------


async def test_execute_manually_runs_future_task(
    executor: TaskExecutor, scheduler: TaskScheduler, registry: ExecutorRegistry
) -> None:
    fn = AsyncMock(return_value="ok")
    registry.register("build-agent", fn)
    task = await scheduler.schedule(
        task_input(owner_ref="build-agent", date=T0 + timedelta(days=30))
    )

    outcome = await executor.execute_manually(task.id, "alice")

    assert outcome.success is True
    fn.assert_awaited_once()


async def test_execute_manually_missing(executor: TaskExecutor) -> None:
    with pytest.raises(NotFoundError):
        await executor.execute_manually("nope")


async def test_execute_manually_running(executor: TaskExecutor, scheduler: TaskScheduler) -> None:
    task = await scheduler.schedule(task_input())
    await scheduler.start_task(task.id)
    with pytest.raises(ValidationError, match="already running"):
        await executor.execute_manually(task.id)


async def test_execute_manually_completed(
    executor: TaskExecutor, scheduler: TaskScheduler
) -> None:
    task = await scheduler.schedule(task_input())
    await scheduler.start_task(task.id)
    await scheduler.complete_task(task.id)
    with pytest.raises(ValidationError, match="already been completed"):
        await executor.execute_manually(task.id)


async def test_early_manual_run_advances_recurrence(
    executor: TaskExecutor, scheduler: TaskScheduler, registry: ExecutorRegistry
) -> None:
    registry.register("build-agent", AsyncMock(return_value=None))
    task = await scheduler.schedule(
        task_input(owner_ref="build-agent", recurrence={"pattern": "daily"})
    )

    await executor.execute_manually(task.id, "alice")

    upcoming = await scheduler.get_upcoming_tasks({"include_recurring": False})
    assert len(upcoming) == 1
    assert upcoming[0].id != task.id
    assert upcoming[0].scheduled_at == task.scheduled_at + timedelta(days=1)


# -- Trigger tasks -------------------------------------------------------------


async def test_process_trigger_tasks_enriches_payload(
    executor: TaskExecutor,
    scheduler: TaskScheduler,
    registry: ExecutorRegistry,
    clock: FakeClock,
) -> None:
    seen: list[Task] = []

    async def on_push(task: Task) -> str:
        seen.append(task)
        return "handled"

    registry.register("ci-agent", on_push)
    listener = await scheduler.schedule(
        task_input(
            owner_ref="ci-agent",
            payload={"pipeline": "main"},
            trigger={"type": "event", "config": {"eventName": "repo.pushed"}},
        )
    )
    await scheduler.schedule(
        task_input(
            owner_ref="ci-agent",
            trigger={"type": "event", "config": {"eventName": "repo.released"}},
        )
    )

    outcomes = await executor.process_trigger_tasks("repo.pushed", {"sha": "abc123"})

    assert [o.task_id for o in outcomes] == [listener.id]
    assert outcomes[0].success is True
    assert len(seen) == 1
    assert seen[0].payload["pipeline"] == "main"
    assert seen[0].payload["trigger_event"] == {
        "type": "repo.pushed",
        "data": {"sha": "abc123"},
        "timestamp": clock.now.isoformat(),
    }
    assert await _status(scheduler, listener.id) == TaskStatus.COMPLETED


async def test_process_trigger_tasks_no_match(executor: TaskExecutor) -> None:
    assert await executor.process_trigger_tasks("nothing.happened") == []
