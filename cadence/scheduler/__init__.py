"""Task scheduling engine — models, persistence, lifecycle, and execution."""

from cadence.scheduler.executor import ExecutorRegistry, TaskExecutor, TaskOutcome
from cadence.scheduler.jobs import HttpJobClient, JobTypeRegistry
from cadence.scheduler.models import ScheduleTaskInput, Task, TaskStatus, TaskType
from cadence.scheduler.queue import QueueStatus, TaskQueue
from cadence.scheduler.ratelimit import RateLimiter
from cadence.scheduler.service import TaskScheduler
from cadence.scheduler.store import TaskStore

__all__ = [
    "ExecutorRegistry",
    "HttpJobClient",
    "JobTypeRegistry",
    "QueueStatus",
    "RateLimiter",
    "ScheduleTaskInput",
    "Task",
    "TaskExecutor",
    "TaskOutcome",
    "TaskQueue",
    "TaskScheduler",
    "TaskStatus",
    "TaskStore",
    "TaskType",
]
