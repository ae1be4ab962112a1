"""TaskStore — aiosqlite persistence for tasks, execution logs and settings."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import aiosqlite

from kuro.config import settings
from kuro.scheduler.models import (
    OUTCOME_ERROR,
    OUTCOME_TIMEOUT,
    STATUS_ACTIVE,
    TASK_STATUSES,
    LogRecord,
    Task,
    TaskStats,
    now_ts,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        cron_expression TEXT NOT NULL,
        http_method TEXT NOT NULL DEFAULT 'GET',
        url TEXT NOT NULL,
        headers TEXT,
        auth_type TEXT,
        auth_value TEXT,
        body TEXT,
        timeout_ms INTEGER NOT NULL DEFAULT 30000,
        retry_count INTEGER NOT NULL DEFAULT 3,
        status TEXT NOT NULL DEFAULT 'paused',
        next_run INTEGER,
        last_run INTEGER,
        success_count INTEGER NOT NULL DEFAULT 0,
        failure_count INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        response_code INTEGER,
        response_body TEXT,
        error_message TEXT,
        duration_ms INTEGER NOT NULL,
        executed_at INTEGER NOT NULL,
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_logs_task_id ON logs(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_logs_executed_at ON logs(executed_at)",
    "CREATE INDEX IF NOT EXISTS idx_logs_status ON logs(status)",
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

DEFAULT_SETTINGS = {
    "log_retention_days": "30",
    "max_concurrent_tasks": "10",
    "default_timeout": "30000",
    "default_retry_count": "3",
}

# Columns that update() may write.
_UPDATABLE = frozenset(
    {
        "name",
        "cron_expression",
        "http_method",
        "url",
        "headers",
        "auth_type",
        "auth_value",
        "body",
        "timeout_ms",
        "retry_count",
        "status",
        "next_run",
        "last_run",
    }
)


class TaskStore:
    """Persists tasks and execution logs in SQLite.

    Singleton accessed via ``TaskStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).  Every call opens its
    own connection, so a single store can be shared by concurrent executions.
    """

    _instance: TaskStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def get(cls) -> TaskStore:
        """Return the shared TaskStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        await db.execute("PRAGMA busy_timeout = 5000")
        if not self._initialised:
            await db.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.executemany(
                "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
                list(DEFAULT_SETTINGS.items()),
            )
            await db.commit()
            self._initialised = True
        return db

    async def _write(self, sql: str, params: tuple = ()) -> int:
        """Run a single mutating statement. Returns the affected row count."""
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def _fetch_tasks(self, sql: str, params: tuple = ()) -> list[Task]:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [Task.from_row(row) for row in rows]
        finally:
            await db.close()

    async def _fetch_logs(self, sql: str, params: tuple = ()) -> list[LogRecord]:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [LogRecord.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Tasks -----------------------------------------------------------------

    async def create(self, task: Task) -> Task:
        """Insert a new task. Returns the stored task with its id assigned."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                INSERT INTO tasks
                    (name, cron_expression, http_method, url, headers, auth_type,
                     auth_value, body, timeout_ms, retry_count, status, next_run,
                     last_run, success_count, failure_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                task.to_row(),
            )
            await db.commit()
            task.id = cursor.lastrowid
        finally:
            await db.close()
        logger.info("Created task: %s (%s)", task.name, task.id)
        return task

    async def find_by_id(self, task_id: int) -> Task | None:
        """Fetch a task by ID, or None if not found."""
        tasks = await self._fetch_tasks("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return tasks[0] if tasks else None

    async def find_all(self) -> list[Task]:
        """Return every task, newest first."""
        return await self._fetch_tasks("SELECT * FROM tasks ORDER BY created_at DESC, id DESC")

    async def find_all_active(self) -> list[Task]:
        """Return all tasks whose status is active."""
        return await self._fetch_tasks(
            "SELECT * FROM tasks WHERE status = ? ORDER BY id", (STATUS_ACTIVE,)
        )

    async def active_task_ids(self) -> set[int]:
        """Return the ids of all active tasks."""
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT id FROM tasks WHERE status = ?", (STATUS_ACTIVE,))
            rows = await cursor.fetchall()
            return {row["id"] for row in rows}
        finally:
            await db.close()

    async def active_schedules(self) -> dict[int, str]:
        """Map each active task id to its cron expression."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, cron_expression FROM tasks WHERE status = ?", (STATUS_ACTIVE,)
            )
            rows = await cursor.fetchall()
            return {row["id"]: row["cron_expression"] for row in rows}
        finally:
            await db.close()

    async def update(self, task_id: int, **fields: Any) -> bool:
        """Update the given columns. Returns True if a row was updated.

        ``id`` and ``created_at`` are ignored; ``updated_at`` is refreshed.
        """
        fields.pop("id", None)
        fields.pop("created_at", None)
        fields.pop("updated_at", None)
        if not fields:
            return False

        unknown = set(fields) - _UPDATABLE
        if unknown:
            msg = f"Cannot update unknown task field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        if "status" in fields and fields["status"] not in TASK_STATUSES:
            msg = f"Unknown task status: {fields['status']!r}"
            raise ValueError(msg)
        if "headers" in fields:
            fields["headers"] = json.dumps(fields["headers"]) if fields["headers"] else None
        if "http_method" in fields:
            fields["http_method"] = fields["http_method"].upper()

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = (*fields.values(), now_ts(), task_id)
        updated = await self._write(
            f"UPDATE tasks SET {assignments}, updated_at = ? WHERE id = ?",  # noqa: S608
            params,
        )
        return updated > 0

    async def set_status(self, task_id: int, status: str) -> bool:
        """Mark a task active or paused."""
        updated = await self.update(task_id, status=status)
        if updated:
            logger.info("Task %s is now %s", task_id, status)
        return updated

    async def set_next_fire_time(self, task_id: int, timestamp: int | None) -> bool:
        """Set or clear the next_run timestamp."""
        return await self.update(task_id, next_run=timestamp)

    async def set_last_fire_time(self, task_id: int, timestamp: int | None = None) -> bool:
        """Set the last_run timestamp (defaults to now)."""
        return await self.update(task_id, last_run=timestamp if timestamp is not None else now_ts())

    async def increment_success_counter(self, task_id: int) -> bool:
        updated = await self._write(
            "UPDATE tasks SET success_count = success_count + 1 WHERE id = ?", (task_id,)
        )
        return updated > 0

    async def increment_failure_counter(self, task_id: int) -> bool:
        updated = await self._write(
            "UPDATE tasks SET failure_count = failure_count + 1 WHERE id = ?", (task_id,)
        )
        return updated > 0

    async def delete(self, task_id: int) -> bool:
        """Delete a task and its logs. Returns True if the task existed."""
        deleted = await self._write("DELETE FROM tasks WHERE id = ?", (task_id,))
        if deleted:
            logger.info("Deleted task: %s", task_id)
        return deleted > 0

    async def get_stats(self, task_id: int) -> TaskStats | None:
        """Return run statistics for a task, or None if it does not exist."""
        task = await self.find_by_id(task_id)
        if task is None:
            return None
        total = task.success_count + task.failure_count
        rate = (task.success_count / total) * 100 if total else 0.0
        return TaskStats(
            total=total,
            success=task.success_count,
            failure=task.failure_count,
            success_rate=round(rate, 1),
        )

    # -- Logs ------------------------------------------------------------------

    async def append_log(self, record: LogRecord) -> LogRecord:
        """Append an execution log record. Returns it with its id assigned."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                INSERT INTO logs
                    (task_id, status, response_code, response_body,
                     error_message, duration_ms, executed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.task_id,
                    record.status,
                    record.response_code,
                    record.response_body,
                    record.error_message,
                    record.duration_ms,
                    record.executed_at,
                ),
            )
            await db.commit()
            record.id = cursor.lastrowid
            return record
        finally:
            await db.close()

    async def logs_for_task(self, task_id: int, limit: int = 50) -> list[LogRecord]:
        """Return the newest log records of one task."""
        return await self._fetch_logs(
            """
            SELECT * FROM logs WHERE task_id = ?
            ORDER BY executed_at DESC, id DESC LIMIT ?
            """,
            (task_id, limit),
        )

    async def recent_logs(self, limit: int = 50) -> list[LogRecord]:
        """Return the newest log records across all tasks."""
        return await self._fetch_logs(
            """
            SELECT l.*, t.name AS task_name
            FROM logs l JOIN tasks t ON l.task_id = t.id
            ORDER BY l.executed_at DESC, l.id DESC LIMIT ?
            """,
            (limit,),
        )

    async def error_logs(self, limit: int = 50) -> list[LogRecord]:
        """Return the newest failed (error or timeout) log records."""
        return await self._fetch_logs(
            """
            SELECT l.*, t.name AS task_name
            FROM logs l JOIN tasks t ON l.task_id = t.id
            WHERE l.status IN (?, ?)
            ORDER BY l.executed_at DESC, l.id DESC LIMIT ?
            """,
            (OUTCOME_ERROR, OUTCOME_TIMEOUT, limit),
        )

    async def count_logs(self, status: str | None = None) -> int:
        db = await self._connect()
        try:
            if status is None:
                cursor = await db.execute("SELECT COUNT(*) FROM logs")
            else:
                cursor = await db.execute("SELECT COUNT(*) FROM logs WHERE status = ?", (status,))
            row = await cursor.fetchone()
            return row[0]
        finally:
            await db.close()

    async def delete_logs_for_task(self, task_id: int) -> int:
        return await self._write("DELETE FROM logs WHERE task_id = ?", (task_id,))

    async def cleanup_old_logs(self, retention_days: int | None = None) -> int:
        """Delete logs older than the retention window. Returns rows removed.

        Without an explicit *retention_days* the ``log_retention_days``
        setting is used.
        """
        if retention_days is None:
            stored = await self.get_setting("log_retention_days")
            retention_days = int(stored) if stored else settings.log_retention_days
        cutoff = now_ts() - retention_days * 24 * 60 * 60
        deleted = await self._write("DELETE FROM logs WHERE executed_at < ?", (cutoff,))
        if deleted:
            logger.info("Cleaned up %d old log entries", deleted)
        return deleted

    # -- Settings --------------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row["value"] if row else None
        finally:
            await db.close()

    async def set_setting(self, key: str, value: str) -> None:
        await self._write(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, str(value)),
        )
