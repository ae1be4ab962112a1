"""Tests for TaskStore — aiosqlite CRUD, logs and settings."""

from pathlib import Path

import pytest

from kuro.scheduler.models import LogRecord, Task, now_ts
from kuro.scheduler.store import TaskStore


def _make_task(name: str = "Test Task", **kwargs) -> Task:
    defaults = {
        "cron_expression": "*/5 * * * *",
        "url": "https://example.com/ping",
        "status": "active",
    }
    defaults.update(kwargs)
    return Task(name=name, **defaults)


def _log(task_id: int, status: str = "success", executed_at: int | None = None) -> LogRecord:
    return LogRecord(
        task_id=task_id,
        status=status,
        duration_ms=10,
        response_code=200 if status == "success" else None,
        executed_at=executed_at or now_ts(),
    )


# -- create / find -------------------------------------------------------------


async def test_create_assigns_id(store: TaskStore) -> None:
    task = await store.create(_make_task(headers={"Accept": "text/plain"}))
    assert task.id is not None

    fetched = await store.find_by_id(task.id)
    assert fetched is not None
    assert fetched.name == "Test Task"
    assert fetched.headers == {"Accept": "text/plain"}
    assert fetched.status == "active"


async def test_find_by_id_not_found(store: TaskStore) -> None:
    assert await store.find_by_id(999) is None


async def test_find_all_active(store: TaskStore) -> None:
    t1 = await store.create(_make_task("Task 1"))
    t2 = await store.create(_make_task("Task 2"))
    t3 = await store.create(_make_task("Task 3", status="paused"))

    active = await store.find_all_active()
    ids = [t.id for t in active]
    assert t1.id in ids
    assert t2.id in ids
    assert t3.id not in ids
    assert await store.active_task_ids() == {t1.id, t2.id}
    assert await store.active_schedules() == {t1.id: "*/5 * * * *", t2.id: "*/5 * * * *"}


async def test_find_all_includes_paused(store: TaskStore) -> None:
    await store.create(_make_task("a"))
    await store.create(_make_task("b", status="paused"))
    assert len(await store.find_all()) == 2


async def test_empty_store(store: TaskStore) -> None:
    assert await store.find_all_active() == []
    assert await store.active_task_ids() == set()
    assert await store.active_schedules() == {}


# -- update --------------------------------------------------------------------


async def test_update_fields(store: TaskStore) -> None:
    task = await store.create(_make_task(created_at=1_000, updated_at=1_000))
    updated = await store.update(
        task.id, url="https://example.com/v2", headers={"X-A": "1"}, http_method="post"
    )
    assert updated is True

    fetched = await store.find_by_id(task.id)
    assert fetched is not None
    assert fetched.url == "https://example.com/v2"
    assert fetched.headers == {"X-A": "1"}
    assert fetched.http_method == "POST"
    assert fetched.created_at == 1_000
    assert fetched.updated_at > 1_000


async def test_update_ignores_id_and_created_at(store: TaskStore) -> None:
    task = await store.create(_make_task())
    assert await store.update(task.id, id=42, created_at=5) is False
    assert await store.find_by_id(42) is None


async def test_update_rejects_unknown_fields(store: TaskStore) -> None:
    task = await store.create(_make_task())
    with pytest.raises(ValueError, match="unknown"):
        await store.update(task.id, success_count=100)


async def test_update_rejects_unknown_status(store: TaskStore) -> None:
    task = await store.create(_make_task())
    with pytest.raises(ValueError, match="status"):
        await store.update(task.id, status="running")


async def test_update_nonexistent_returns_false(store: TaskStore) -> None:
    assert await store.update(999, name="x") is False


async def test_set_status(store: TaskStore) -> None:
    task = await store.create(_make_task())
    assert await store.set_status(task.id, "paused") is True
    assert await store.active_task_ids() == set()


# -- fire times and counters ---------------------------------------------------


async def test_set_next_fire_time(store: TaskStore) -> None:
    task = await store.create(_make_task())
    await store.set_next_fire_time(task.id, 1_800_000_000)
    fetched = await store.find_by_id(task.id)
    assert fetched is not None
    assert fetched.next_run == 1_800_000_000

    await store.set_next_fire_time(task.id, None)
    fetched = await store.find_by_id(task.id)
    assert fetched is not None
    assert fetched.next_run is None


async def test_set_last_fire_time_defaults_to_now(store: TaskStore) -> None:
    task = await store.create(_make_task())
    before = now_ts()
    await store.set_last_fire_time(task.id)
    fetched = await store.find_by_id(task.id)
    assert fetched is not None
    assert fetched.last_run is not None
    assert fetched.last_run >= before


async def test_counters(store: TaskStore) -> None:
    task = await store.create(_make_task())
    await store.increment_success_counter(task.id)
    await store.increment_success_counter(task.id)
    await store.increment_failure_counter(task.id)

    stats = await store.get_stats(task.id)
    assert stats is not None
    assert stats.total == 3
    assert stats.success == 2
    assert stats.failure == 1
    assert stats.success_rate == 66.7


async def test_counter_on_missing_task(store: TaskStore) -> None:
    assert await store.increment_success_counter(999) is False


async def test_stats_without_runs(store: TaskStore) -> None:
    task = await store.create(_make_task())
    stats = await store.get_stats(task.id)
    assert stats is not None
    assert stats.total == 0
    assert stats.success_rate == 0.0
    assert await store.get_stats(999) is None


# -- delete --------------------------------------------------------------------


async def test_delete_cascades_logs(store: TaskStore) -> None:
    task = await store.create(_make_task())
    await store.append_log(_log(task.id))

    assert await store.delete(task.id) is True
    assert await store.find_by_id(task.id) is None
    assert await store.count_logs() == 0


async def test_delete_nonexistent_returns_false(store: TaskStore) -> None:
    assert await store.delete(999) is False


# -- logs ----------------------------------------------------------------------


async def test_append_and_query_logs(store: TaskStore) -> None:
    task = await store.create(_make_task("pinger"))
    other = await store.create(_make_task("other"))
    first = await store.append_log(_log(task.id, executed_at=1_000))
    await store.append_log(_log(task.id, status="timeout", executed_at=2_000))
    await store.append_log(_log(other.id, status="error", executed_at=3_000))

    assert first.id is not None

    task_logs = await store.logs_for_task(task.id)
    assert [r.executed_at for r in task_logs] == [2_000, 1_000]

    recent = await store.recent_logs(limit=2)
    assert [r.executed_at for r in recent] == [3_000, 2_000]
    assert recent[0].task_name == "other"

    errors = await store.error_logs()
    assert {r.status for r in errors} == {"timeout", "error"}

    assert await store.count_logs() == 3
    assert await store.count_logs("success") == 1


async def test_delete_logs_for_task(store: TaskStore) -> None:
    task = await store.create(_make_task())
    await store.append_log(_log(task.id))
    await store.append_log(_log(task.id))
    assert await store.delete_logs_for_task(task.id) == 2
    assert await store.logs_for_task(task.id) == []


async def test_cleanup_old_logs(store: TaskStore) -> None:
    task = await store.create(_make_task())
    old = now_ts() - 40 * 24 * 60 * 60
    await store.append_log(_log(task.id, executed_at=old))
    await store.append_log(_log(task.id))

    assert await store.cleanup_old_logs() == 1
    assert await store.count_logs() == 1


async def test_cleanup_uses_retention_setting(store: TaskStore) -> None:
    task = await store.create(_make_task())
    await store.append_log(_log(task.id, executed_at=now_ts() - 3 * 24 * 60 * 60))
    await store.set_setting("log_retention_days", "2")
    assert await store.cleanup_old_logs() == 1


# -- settings ------------------------------------------------------------------


async def test_default_settings_seeded(store: TaskStore) -> None:
    assert await store.get_setting("log_retention_days") == "30"
    assert await store.get_setting("max_concurrent_tasks") == "10"
    assert await store.get_setting("missing") is None


async def test_set_setting_overwrites(store: TaskStore) -> None:
    await store.set_setting("default_timeout", "5000")
    assert await store.get_setting("default_timeout") == "5000"


# -- Singleton -----------------------------------------------------------------


def test_singleton(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("kuro.config.settings.database_path", tmp_path / "kuro.db")
    TaskStore._reset()
    try:
        s1 = TaskStore.get()
        s2 = TaskStore.get()
        assert s1 is s2
        assert s1.db_path == tmp_path / "kuro.db"
    finally:
        TaskStore._reset()
