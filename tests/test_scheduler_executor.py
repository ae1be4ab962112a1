"""Tests for HttpExecutor — request building, retries and persistence."""

import asyncio
import json
from unittest.mock import AsyncMock, call

import httpx
import pytest

from kuro.scheduler.executor import HttpExecutor, build_headers, read_body
from kuro.scheduler.models import MAX_RESPONSE_CHARS, TRUNCATION_MARKER, Task
from kuro.scheduler.store import TaskStore


def _make_task(**kwargs) -> Task:
    defaults = {
        "name": "Ping",
        "cron_expression": "*/5 * * * *",
        "url": "https://example.com/ping",
        "status": "active",
        "timeout_ms": 1000,
        "retry_count": 0,
    }
    defaults.update(kwargs)
    return Task(**defaults)


class Recorder:
    """MockTransport handler that records requests and replays a script."""

    def __init__(self, *responses) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _executor(store: TaskStore, handler, sleep: AsyncMock | None = None) -> HttpExecutor:
    return HttpExecutor(
        store=store, transport=httpx.MockTransport(handler), sleep=sleep or AsyncMock()
    )


# -- build_headers -------------------------------------------------------------


class TestBuildHeaders:
    def test_custom_headers_kept(self):
        headers = build_headers(_make_task(headers={"Accept": "text/html"}))
        assert headers == {"Accept": "text/html"}

    @pytest.mark.parametrize(
        ("auth_type", "name", "value"),
        [
            ("bearer", "Authorization", "Bearer secret"),
            ("basic", "Authorization", "Basic secret"),
            ("api_key", "X-API-Key", "secret"),
            ("custom", "Authorization", "secret"),
        ],
    )
    def test_auth_directive(self, auth_type: str, name: str, value: str):
        headers = build_headers(_make_task(auth_type=auth_type, auth_value="secret"))
        assert headers[name] == value

    def test_auth_without_value_ignored(self):
        assert build_headers(_make_task(auth_type="bearer")) == {}

    def test_json_body_gets_json_content_type(self):
        task = _make_task(http_method="POST", body='{"a": 1}')
        assert build_headers(task)["Content-Type"] == "application/json"

    def test_text_body_gets_plain_content_type(self):
        task = _make_task(http_method="PUT", body="hello")
        assert build_headers(task)["Content-Type"] == "text/plain"

    def test_explicit_content_type_kept(self):
        task = _make_task(
            http_method="PATCH", body='{"a": 1}', headers={"content-type": "application/xml"}
        )
        headers = build_headers(task)
        assert headers == {"content-type": "application/xml"}

    def test_body_ignored_for_get(self):
        assert "Content-Type" not in build_headers(_make_task(body='{"a": 1}'))


# -- read_body -----------------------------------------------------------------


class TestReadBody:
    def test_json_pretty_printed(self):
        response = httpx.Response(200, json={"ok": True, "n": 1})
        assert read_body(response) == json.dumps({"ok": True, "n": 1}, indent=2)

    def test_text_preserved(self):
        assert read_body(httpx.Response(200, text="plain text")) == "plain text"

    def test_body_at_limit_preserved(self):
        body = "a" * MAX_RESPONSE_CHARS
        assert read_body(httpx.Response(200, text=body)) == body

    def test_long_body_truncated(self):
        body = "b" * (MAX_RESPONSE_CHARS + 500)
        result = read_body(httpx.Response(200, text=body))
        assert result == body[:MAX_RESPONSE_CHARS] + TRUNCATION_MARKER

    def test_invalid_json_reported(self):
        response = httpx.Response(
            200, content=b"{not json", headers={"content-type": "application/json"}
        )
        assert read_body(response) == "(Failed to read response body)"


# -- execute -------------------------------------------------------------------


async def test_success_persists_log_and_counters(store: TaskStore) -> None:
    task = await store.create(_make_task())
    handler = Recorder(httpx.Response(200, text="pong"))

    outcome = await _executor(store, handler).execute(task)

    assert outcome.status == "success"
    assert outcome.response_code == 200
    assert outcome.response_body == "pong"
    assert outcome.error_message is None
    assert len(handler.requests) == 1

    logs = await store.logs_for_task(task.id)
    assert len(logs) == 1
    assert logs[0].status == "success"
    assert logs[0].response_body == "pong"

    updated = await store.find_by_id(task.id)
    assert updated is not None
    assert updated.success_count == 1
    assert updated.failure_count == 0
    assert updated.last_run == logs[0].executed_at


async def test_request_carries_method_headers_and_body(store: TaskStore) -> None:
    task = await store.create(
        _make_task(
            http_method="POST",
            body='{"x": 1}',
            headers={"X-Trace": "abc"},
            auth_type="bearer",
            auth_value="tok",
        )
    )
    handler = Recorder(httpx.Response(201))

    await _executor(store, handler).execute(task)

    request = handler.requests[0]
    assert request.method == "POST"
    assert request.headers["X-Trace"] == "abc"
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.headers["Content-Type"] == "application/json"
    assert request.content == b'{"x": 1}'


@pytest.mark.parametrize("status", [404, 500, 503])
async def test_http_error_not_retried(store: TaskStore, status: int) -> None:
    task = await store.create(_make_task(retry_count=3))
    handler = Recorder(httpx.Response(status, text="nope"))
    sleep = AsyncMock()

    outcome = await _executor(store, handler, sleep).execute(task)

    assert len(handler.requests) == 1
    sleep.assert_not_awaited()
    assert outcome.status == "error"
    assert outcome.response_code == status
    assert outcome.error_message.startswith(f"HTTP {status} ")

    updated = await store.find_by_id(task.id)
    assert updated is not None
    assert updated.failure_count == 1


async def test_timeout_retries_with_linear_backoff(store: TaskStore) -> None:
    task = await store.create(_make_task(retry_count=2, timeout_ms=250))
    handler = Recorder(httpx.ReadTimeout("timed out"))
    sleep = AsyncMock()

    outcome = await _executor(store, handler, sleep).execute(task)

    assert len(handler.requests) == 3
    assert sleep.await_args_list == [call(1.0), call(2.0)]
    assert outcome.status == "timeout"
    assert outcome.response_code is None
    assert outcome.error_message == "Request timed out after 250ms (2 retries failed)"

    logs = await store.logs_for_task(task.id)
    assert len(logs) == 1
    assert logs[0].status == "timeout"


async def test_transport_error_retried_then_reported(store: TaskStore) -> None:
    task = await store.create(_make_task(retry_count=1))
    handler = Recorder(httpx.ConnectError("connection refused"))
    sleep = AsyncMock()

    outcome = await _executor(store, handler, sleep).execute(task)

    assert len(handler.requests) == 2
    sleep.assert_awaited_once_with(1.0)
    assert outcome.status == "error"
    assert outcome.error_message == "connection refused (1 retries failed)"


async def test_recovers_after_transient_failure(store: TaskStore) -> None:
    task = await store.create(_make_task(retry_count=3))
    handler = Recorder(httpx.ConnectError("reset"), httpx.Response(200, text="ok"))

    outcome = await _executor(store, handler).execute(task)

    assert outcome.status == "success"
    assert len(handler.requests) == 2
    updated = await store.find_by_id(task.id)
    assert updated is not None
    assert updated.success_count == 1
    assert updated.failure_count == 0


async def test_hard_timeout_aborts_slow_request(store: TaskStore) -> None:
    task = await store.create(_make_task(timeout_ms=50))

    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200)

    outcome = await _executor(store, slow).execute(task)

    assert outcome.status == "timeout"
    assert outcome.duration_ms < 5000
    assert outcome.error_message == "Request timed out after 50ms (0 retries failed)"


async def test_execute_by_id_missing_task(store: TaskStore) -> None:
    handler = Recorder(httpx.Response(200))
    assert await _executor(store, handler).execute_by_id(999) is None
    assert handler.requests == []


async def test_execute_by_id(store: TaskStore) -> None:
    task = await store.create(_make_task())
    outcome = await _executor(store, Recorder(httpx.Response(204))).execute_by_id(task.id)
    assert outcome is not None
    assert outcome.status == "success"


async def test_unsendable_header_reported_as_failure(store: TaskStore) -> None:
    task = await store.create(_make_task(retry_count=1, headers={"X-User": "José"}))
    handler = Recorder(httpx.Response(200))
    sleep = AsyncMock()

    outcome = await _executor(store, handler, sleep).execute(task)

    assert handler.requests == []
    sleep.assert_awaited_once_with(1.0)
    assert outcome.status == "error"
    assert outcome.error_message.endswith("(1 retries failed)")

    logs = await store.logs_for_task(task.id)
    assert len(logs) == 1
    assert logs[0].status == "error"
    updated = await store.find_by_id(task.id)
    assert updated is not None
    assert updated.failure_count == 1
    assert updated.last_run == logs[0].executed_at


async def test_duration_spans_all_attempts(store: TaskStore) -> None:
    task = await store.create(_make_task(retry_count=1))
    handler = Recorder(httpx.ConnectError("refused"), httpx.Response(200))

    async def slow_sleep(delay: float) -> None:
        await asyncio.sleep(0.05)

    outcome = await _executor(store, handler, AsyncMock(side_effect=slow_sleep)).execute(task)

    assert outcome.status == "success"
    assert outcome.duration_ms >= 50
