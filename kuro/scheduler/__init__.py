"""Scheduled HTTP tasks — models, persistence, execution, and scheduling."""

from kuro.scheduler.engine import TaskScheduler
from kuro.scheduler.executor import HttpExecutor
from kuro.scheduler.models import ExecutionOutcome, LogRecord, Task
from kuro.scheduler.store import TaskStore

__all__ = [
    "Task",
    "ExecutionOutcome",
    "LogRecord",
    "TaskStore",
    "HttpExecutor",
    "TaskScheduler",
]
