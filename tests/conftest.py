"""Shared test fixtures."""

from pathlib import Path

import pytest

from kuro.scheduler.store import TaskStore


@pytest.fixture
async def store(tmp_path: Path) -> TaskStore:
    """Create a TaskStore backed by a temp database."""
    return TaskStore(db_path=tmp_path / "test.db")


@pytest.fixture(autouse=True)
def _utc_scheduler(monkeypatch: pytest.MonkeyPatch) -> None:
    """Evaluate cron expressions in UTC regardless of the environment."""
    monkeypatch.setattr("kuro.config.settings.scheduler_timezone", "UTC")
