"""Pytest fixtures for tsk tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear module-level caches before each test."""
    from tsk.config import clear_config_cache

    clear_config_cache()

    yield

    # Also clear after test (cleanup)
    clear_config_cache()


class FakeClock:
    """Deterministic wall clock for the store."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Deterministic monotonic clock for the task timer."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def tasks_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "tasks.json"


@pytest.fixture
def store(tasks_path: Path, clock: FakeClock, timer: FakeTimer):
    """A store on a fresh data dir with fixed clocks and no retry delays."""
    from tsk.store import TaskStore

    s = TaskStore.load(
        tasks_path,
        debounce_seconds=60,
        retry_delays=(60,),
        clock=clock,
        timer_clock=timer,
    )
    yield s
    s.close()
