"""Task, execution outcome and log record data models."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

# Task activity states
STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
TASK_STATUSES = (STATUS_ACTIVE, STATUS_PAUSED)

# Execution outcome statuses
OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_TIMEOUT = "timeout"

AUTH_TYPES = ("bearer", "basic", "api_key", "custom")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

MAX_RESPONSE_CHARS = 10_000
TRUNCATION_MARKER = "\n... (truncated)"


class TaskNotFound(LookupError):
    """No task exists with the requested id."""


def now_ts() -> int:
    """Current time as integer epoch seconds."""
    return int(time.time())


@dataclass
class Task:
    """A scheduled HTTP request with its retry policy and run statistics.

    Attributes:
        id: Store-assigned identifier (``None`` until persisted).
        name: Human-readable name.
        cron_expression: 5-field crontab schedule.
        url: Target URL.
        http_method: HTTP verb, upper-case.
        headers: Custom request headers.
        body: Optional request body, sent for POST/PUT/PATCH only.
        auth_type: ``"bearer"``, ``"basic"``, ``"api_key"``, ``"custom"`` or None.
        auth_value: Credential used by *auth_type*.
        timeout_ms: Per-attempt hard timeout in milliseconds.
        retry_count: Retries after a timeout or transport failure.
        status: ``"active"`` (scheduled) or ``"paused"``.
        next_run: Epoch seconds of the next planned fire.
        last_run: Epoch seconds at which the last execution completed.
        success_count: Completed executions classified as success.
        failure_count: Completed executions classified as error or timeout.
        created_at: Epoch seconds.
        updated_at: Epoch seconds.
    """

    name: str
    cron_expression: str
    url: str
    http_method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    auth_type: str | None = None
    auth_value: str | None = None
    timeout_ms: int = 30000
    retry_count: int = 3
    status: str = STATUS_PAUSED
    next_run: int | None = None
    last_run: int | None = None
    success_count: int = 0
    failure_count: int = 0
    id: int | None = None
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self) -> None:
        self.http_method = self.http_method.upper()
        if self.status not in TASK_STATUSES:
            msg = f"Unknown task status: {self.status!r}"
            raise ValueError(msg)
        if self.auth_type is not None and self.auth_type not in AUTH_TYPES:
            msg = f"Unknown auth type: {self.auth_type!r}"
            raise ValueError(msg)
        if not self.created_at:
            self.created_at = now_ts()
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the insert column order (no id)."""
        return (
            self.name,
            self.cron_expression,
            self.http_method,
            self.url,
            json.dumps(self.headers) if self.headers else None,
            self.auth_type,
            self.auth_value,
            self.body,
            self.timeout_ms,
            self.retry_count,
            self.status,
            self.next_run,
            self.last_run,
            self.success_count,
            self.failure_count,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Any) -> Task:
        """Deserialize from a ``tasks`` row (sqlite3.Row or mapping)."""
        headers = json.loads(row["headers"]) if row["headers"] else {}
        return cls(
            id=row["id"],
            name=row["name"],
            cron_expression=row["cron_expression"],
            http_method=row["http_method"],
            url=row["url"],
            headers=headers,
            auth_type=row["auth_type"],
            auth_value=row["auth_value"],
            body=row["body"],
            timeout_ms=row["timeout_ms"],
            retry_count=row["retry_count"],
            status=row["status"],
            next_run=row["next_run"],
            last_run=row["last_run"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ExecutionOutcome:
    """The classified result of one execution (after retries)."""

    status: str
    duration_ms: int
    response_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.status == OUTCOME_SUCCESS


@dataclass
class LogRecord:
    """A persisted execution outcome. Append-only."""

    task_id: int
    status: str
    duration_ms: int
    response_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    executed_at: int = 0
    id: int | None = None
    task_name: str | None = None

    def __post_init__(self) -> None:
        if not self.executed_at:
            self.executed_at = now_ts()

    @classmethod
    def from_outcome(cls, task_id: int, outcome: ExecutionOutcome, executed_at: int) -> LogRecord:
        return cls(
            task_id=task_id,
            status=outcome.status,
            duration_ms=outcome.duration_ms,
            response_code=outcome.response_code,
            response_body=outcome.response_body,
            error_message=outcome.error_message,
            executed_at=executed_at,
        )

    @classmethod
    def from_row(cls, row: Any) -> LogRecord:
        keys = row.keys()
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            status=row["status"],
            response_code=row["response_code"],
            response_body=row["response_body"],
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
            executed_at=row["executed_at"],
            task_name=row["task_name"] if "task_name" in keys else None,
        )


@dataclass(frozen=True)
class TaskStats:
    total: int
    success: int
    failure: int
    success_rate: float


def truncate_body(body: str) -> str:
    """Cap a response body at MAX_RESPONSE_CHARS, appending the marker."""
    if len(body) > MAX_RESPONSE_CHARS:
        return body[:MAX_RESPONSE_CHARS] + TRUNCATION_MARKER
    return body
