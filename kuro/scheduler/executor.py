"""HttpExecutor — performs a task's HTTP request with timeout and retries."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING

import httpx

from kuro.scheduler.models import (
    OUTCOME_ERROR,
    OUTCOME_SUCCESS,
    OUTCOME_TIMEOUT,
    ExecutionOutcome,
    LogRecord,
    Task,
    now_ts,
    truncate_body,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from kuro.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
API_KEY_HEADER = "X-API-Key"
BACKOFF_STEP_SECONDS = 1.0
UNREADABLE_BODY = "(Failed to read response body)"


def build_headers(task: Task) -> dict[str, str]:
    """Merge custom headers with the auth directive and a default content type."""
    headers = dict(task.headers)

    if task.auth_type and task.auth_value:
        if task.auth_type == "bearer":
            headers["Authorization"] = f"Bearer {task.auth_value}"
        elif task.auth_type == "basic":
            headers["Authorization"] = f"Basic {task.auth_value}"
        elif task.auth_type == "api_key":
            headers[API_KEY_HEADER] = task.auth_value
        elif task.auth_type == "custom":
            headers["Authorization"] = task.auth_value

    if request_body(task) is not None and not any(
        name.lower() == "content-type" for name in headers
    ):
        try:
            json.loads(task.body)
            headers["Content-Type"] = "application/json"
        except ValueError:
            headers["Content-Type"] = "text/plain"

    return headers


def request_body(task: Task) -> str | None:
    """Return the body to send, or None for methods that carry no body."""
    if task.body and task.http_method in BODY_METHODS:
        return task.body
    return None


def read_body(response: httpx.Response) -> str:
    """Capture a response body as text, pretty-printing JSON, truncated."""
    content_type = response.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            text = json.dumps(response.json(), indent=2, ensure_ascii=False)
        else:
            text = response.text
    except (ValueError, UnicodeDecodeError):
        return UNREADABLE_BODY
    return truncate_body(text)


class HttpExecutor:
    """Executes a task's HTTP request and records the outcome.

    Timeouts and transport failures are retried up to ``task.retry_count``
    times with a linear backoff of one second per attempt.  A received HTTP
    error response is final and never retried.  The reported ``duration_ms``
    spans the whole execution, retries and backoff included.

    Args:
        store: TaskStore receiving log records and counter updates.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
        sleep: Awaitable used for the backoff delay.
    """

    def __init__(
        self,
        store: TaskStore,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._transport = transport
        self._sleep = sleep

    async def execute_by_id(self, task_id: int) -> ExecutionOutcome | None:
        """Look up a task and execute it. Returns None if it does not exist."""
        task = await self._store.find_by_id(task_id)
        if task is None:
            logger.warning("Task not found: %s", task_id)
            return None
        return await self.execute(task)

    async def execute(self, task: Task) -> ExecutionOutcome:
        """Run the request (with retries) and persist the terminal outcome."""
        logger.info("Executing task: '%s' (%s %s)", task.name, task.http_method, task.url)

        outcome = await self._execute_with_retry(task)
        completed_at = now_ts()

        await self._store.append_log(LogRecord.from_outcome(task.id, outcome, completed_at))
        if outcome.success:
            await self._store.increment_success_counter(task.id)
        else:
            await self._store.increment_failure_counter(task.id)
        await self._store.set_last_fire_time(task.id, completed_at)

        logger.info(
            "Task %s completed: %s (%dms)", task.id, outcome.status, outcome.duration_ms
        )
        return outcome

    async def _execute_with_retry(self, task: Task) -> ExecutionOutcome:
        started = time.monotonic()
        attempt = 0
        while True:
            try:
                response = await self._attempt(task)
            except (TimeoutError, httpx.TimeoutException):
                if attempt < task.retry_count:
                    logger.warning(
                        "Task %s timed out, retrying (%d/%d)...",
                        task.id,
                        attempt + 1,
                        task.retry_count,
                    )
                    await self._sleep(BACKOFF_STEP_SECONDS * (attempt + 1))
                    attempt += 1
                    continue
                return ExecutionOutcome(
                    status=OUTCOME_TIMEOUT,
                    duration_ms=_elapsed_ms(started),
                    error_message=(
                        f"Request timed out after {task.timeout_ms}ms"
                        f" ({task.retry_count} retries failed)"
                    ),
                )
            except Exception as exc:
                # Transport failures, plus requests httpx refuses to build
                # (invalid URL, non-ASCII header values).
                if attempt < task.retry_count:
                    logger.warning(
                        "Task %s failed (%s), retrying (%d/%d)...",
                        task.id,
                        exc,
                        attempt + 1,
                        task.retry_count,
                    )
                    await self._sleep(BACKOFF_STEP_SECONDS * (attempt + 1))
                    attempt += 1
                    continue
                reason = str(exc) or type(exc).__name__
                return ExecutionOutcome(
                    status=OUTCOME_ERROR,
                    duration_ms=_elapsed_ms(started),
                    error_message=f"{reason} ({task.retry_count} retries failed)",
                )

            outcome = ExecutionOutcome(
                status=OUTCOME_SUCCESS if response.is_success else OUTCOME_ERROR,
                duration_ms=_elapsed_ms(started),
                response_code=response.status_code,
                response_body=read_body(response),
            )
            if not response.is_success:
                outcome.error_message = f"HTTP {response.status_code} {response.reason_phrase}"
            return outcome

    async def _attempt(self, task: Task) -> httpx.Response:
        """Issue one request, aborted once the task's timeout elapses."""
        timeout = task.timeout_ms / 1000
        async with httpx.AsyncClient(
            timeout=timeout, transport=self._transport, follow_redirects=True
        ) as client:
            return await asyncio.wait_for(
                client.request(
                    task.http_method,
                    task.url,
                    headers=build_headers(task),
                    content=request_body(task),
                ),
                timeout=timeout,
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
