"""TaskScheduler — arms one timer per active task and keeps them in sync."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from kuro.config import settings
from kuro.cron import InvalidExpression, next_fire_time
from kuro.scheduler.models import now_ts

if TYPE_CHECKING:
    from apscheduler.job import Job

    from kuro.scheduler.executor import HttpExecutor
    from kuro.scheduler.models import ExecutionOutcome, Task
    from kuro.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "kuro:reconcile"


def _job_id(task_id: int) -> str:
    return f"task:{task_id}"


def _format_ts(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat()


class TaskScheduler:
    """Owns the timers of all active tasks.

    Each active task has at most one pending one-shot APScheduler job.  When
    it fires, the task's request is started as an independent asyncio task
    and the next fire is armed right away from the current time, so slow
    requests may overlap with the following fire.  A reconciliation job
    periodically aligns the armed set with the store's active tasks.

    Args:
        store: TaskStore holding task definitions (the source of truth).
        executor: HttpExecutor running the requests.
        timezone: IANA timezone for cron evaluation (default from settings).
        reconcile_interval: Seconds between reconciliation ticks.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: HttpExecutor,
        timezone: str | None = None,
        reconcile_interval: int | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._timezone = timezone or settings.scheduler_timezone
        self._reconcile_interval = reconcile_interval or settings.reconcile_interval_seconds
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._timers: dict[int, Job] = {}
        self._expressions: dict[int, str] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def scheduled_task_ids(self) -> list[int]:
        """Return the ids of tasks that currently have a pending fire."""
        return sorted(self._timers)

    def is_task_scheduled(self, task_id: int) -> bool:
        return task_id in self._timers

    @property
    def in_flight(self) -> int:
        """Number of executions started by fires that have not finished."""
        return len(self._in_flight)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Arm every active task and begin the reconciliation cycle."""
        if self._running:
            logger.warning("Scheduler is already running")
            return
        self._running = True
        self._scheduler.start()
        self._scheduler.add_job(
            self.reconcile,
            trigger=IntervalTrigger(seconds=self._reconcile_interval),
            id=RECONCILE_JOB_ID,
            name="reconcile",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )

        try:
            tasks = await self._store.find_all_active()
        except Exception:
            logger.exception("Failed to load active tasks, leaving them to reconciliation")
            tasks = []
        scheduled = 0
        for task in tasks:
            try:
                if await self.schedule_task(task.id) is not None:
                    scheduled += 1
            except Exception:
                logger.exception("Failed to schedule task %s", task.id)

        logger.info(
            "Scheduler started with %d/%d active task(s) (tz=%s, reconcile every %ds)",
            scheduled,
            len(tasks),
            self._timezone,
            self._reconcile_interval,
        )

    async def stop(self) -> None:
        """Cancel every pending fire. In-flight executions keep running."""
        if not self._running:
            logger.info("Scheduler is not running")
            return
        self._running = False
        for task_id in list(self._timers):
            self.unschedule_task(task_id)
        self._timers.clear()
        self._expressions.clear()
        self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight executions to finish (up to *timeout* seconds)."""
        if not self._in_flight:
            return
        logger.info("Waiting for %d in-flight execution(s)", len(self._in_flight))
        await asyncio.wait(set(self._in_flight), timeout=timeout)

    # -- Task management -------------------------------------------------------

    async def schedule_task(self, task_id: int) -> int | None:
        """Arm the next fire of an active task.

        Returns the armed fire time (epoch seconds), or None when the task is
        missing, paused or has an invalid cron expression.
        """
        self.unschedule_task(task_id)

        task = await self._store.find_by_id(task_id)
        if task is None:
            logger.warning("Task %s not found", task_id)
            return None
        if not task.is_active:
            logger.info("Task %s is not active, not scheduling", task_id)
            return None
        return await self._arm(task)

    def unschedule_task(self, task_id: int) -> bool:
        """Cancel a pending fire. Returns False if none was armed."""
        job = self._timers.pop(task_id, None)
        self._expressions.pop(task_id, None)
        if job is None:
            return False
        try:
            self._scheduler.remove_job(job.id)
        except JobLookupError:
            logger.debug("Job for task %s already consumed", task_id)
        logger.info("Unscheduled task %s", task_id)
        return True

    async def reschedule_task(self, task_id: int) -> int | None:
        """Re-arm a task after its schedule or request changed."""
        self.unschedule_task(task_id)
        return await self.schedule_task(task_id)

    async def run_now(self, task_id: int) -> ExecutionOutcome | None:
        """Execute a task immediately, outside its schedule."""
        return await self._executor.execute_by_id(task_id)

    async def reconcile(self) -> None:
        """Align armed timers with the store's active tasks and their schedules.

        Tasks no longer active are unscheduled, newly active ones scheduled,
        and armed tasks whose cron expression changed are rescheduled.
        """
        if not self._running:
            return
        try:
            schedules = await self._store.active_schedules()
        except Exception:
            logger.exception("Reconciliation failed to read active tasks")
            return

        active = set(schedules)
        armed = set(self._timers)
        for task_id in armed - active:
            logger.info("Task %s is no longer active", task_id)
            self.unschedule_task(task_id)
        for task_id in sorted(active - armed):
            logger.info("Task %s became active", task_id)
            try:
                await self.schedule_task(task_id)
            except Exception:
                logger.exception("Failed to schedule task %s", task_id)
        for task_id in sorted(armed & active):
            if self._expressions.get(task_id, schedules[task_id]) == schedules[task_id]:
                continue
            logger.info("Schedule of task %s changed", task_id)
            try:
                await self.reschedule_task(task_id)
            except Exception:
                logger.exception("Failed to reschedule task %s", task_id)

    # -- Internal --------------------------------------------------------------

    async def _arm(self, task: Task) -> int | None:
        now = now_ts()
        try:
            next_run = next_fire_time(task.cron_expression, now, self._timezone)
        except InvalidExpression as exc:
            logger.warning("Failed to schedule task %s (%s): %s", task.id, task.name, exc)
            return None

        await self._store.set_next_fire_time(task.id, next_run)
        job = self._scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=datetime.fromtimestamp(max(next_run, now), tz=UTC)),
            id=_job_id(task.id),
            name=task.name,
            args=[task.id],
            misfire_grace_time=None,
            max_instances=2,
            replace_existing=True,
        )
        self._timers[task.id] = job
        self._expressions[task.id] = task.cron_expression
        logger.info(
            "Scheduled task %s (%s) - next run: %s", task.id, task.name, _format_ts(next_run)
        )
        return next_run

    async def _fire(self, task_id: int) -> None:
        """Job callback: start the request, then arm the following fire."""
        self._timers.pop(task_id, None)
        self._expressions.pop(task_id, None)
        logger.info("Running task %s", task_id)
        self._spawn(task_id)

        task = await self._store.find_by_id(task_id)
        if not self._running or task_id in self._timers:
            # Stopped, or re-armed by reconcile/reschedule meanwhile.
            return
        if task is None or not task.is_active:
            logger.info("Task %s was removed or paused, not re-arming", task_id)
            return
        await self._arm(task)

    def _spawn(self, task_id: int) -> None:
        execution = asyncio.create_task(self._execute(task_id), name=f"kuro-task-{task_id}")
        self._in_flight.add(execution)
        execution.add_done_callback(self._in_flight.discard)

    async def _execute(self, task_id: int) -> None:
        try:
            await self._executor.execute_by_id(task_id)
        except Exception:
            logger.exception("Execution of task %s failed", task_id)
