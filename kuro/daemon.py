"""Foreground service: runs the scheduler until SIGINT/SIGTERM."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from kuro.config import settings
from kuro.scheduler.engine import TaskScheduler
from kuro.scheduler.executor import HttpExecutor
from kuro.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

_SHUTDOWN_GRACE_SECONDS = 30


async def log_cleanup_loop(store: TaskStore, interval_hours: int | None = None) -> None:
    """Periodically delete execution logs past the retention window.

    Runs forever as a background task.
    """
    interval = (interval_hours or settings.log_cleanup_interval_hours) * 60 * 60
    while True:
        await asyncio.sleep(interval)
        try:
            await store.cleanup_old_logs()
        except Exception:
            logger.exception("Log cleanup failed")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)


async def serve(
    store: TaskStore | None = None,
    executor: HttpExecutor | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Start the scheduler and block until *stop* is set (or a signal arrives)."""
    store = store or TaskStore.get()
    executor = executor or HttpExecutor(store=store)
    stop = stop or asyncio.Event()
    _install_signal_handlers(stop)

    removed = await store.cleanup_old_logs()
    if removed:
        logger.info("Removed %d expired log entries at startup", removed)

    scheduler = TaskScheduler(store=store, executor=executor)
    await scheduler.start()
    cleanup = asyncio.create_task(log_cleanup_loop(store))
    logger.info("Kuro started (database: %s)", store.db_path)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        cleanup.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup
        await scheduler.stop()
        await scheduler.drain(timeout=_SHUTDOWN_GRACE_SECONDS)
        logger.info("Kuro stopped")
