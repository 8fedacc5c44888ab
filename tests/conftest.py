from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Tuple

import pytest

from backend import InMemoryBackend
from models import FocusSession
from notifications import Toaster
from storage import KeyValueStore

TODAY = date(2026, 10, 17)
NOON = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """epoch seconds that only move when told to"""

    def __init__(self, now: float = 1_800_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ManualScheduler:
    """after/after_cancel driven by FakeClock, advanced one second at a time"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.jobs: Dict[int, Tuple[float, Callable[[], None]]] = {}
        self._next = 0

    def after(self, ms, fn):
        self._next += 1
        self.jobs[self._next] = (self.clock.now + ms / 1000.0, fn)
        return self._next

    def after_cancel(self, job_id):
        self.jobs.pop(job_id, None)

    def advance(self, seconds: int) -> None:
        for _ in range(int(seconds)):
            self.clock.now += 1
            due = sorted(jid for jid, (at, _) in self.jobs.items() if at <= self.clock.now)
            for jid in due:
                job = self.jobs.pop(jid, None)
                if job is not None:
                    job[1]()


def session(days_ago: int, minutes: float, mode: str = "focus", list_name=None, hour: int = 10) -> FocusSession:
    day = TODAY - timedelta(days=days_ago)
    return FocusSession(id=f"s-{days_ago}-{minutes}-{mode}-{hour}", user_id="u1",
                        duration_seconds=int(minutes * 60), mode=mode,
                        created_at=f"{day.isoformat()}T{hour:02d}:00:00+00:00",
                        list_name=list_name)


@pytest.fixture()
def backend() -> InMemoryBackend:
    return InMemoryBackend(clock=lambda: NOON)


@pytest.fixture()
def toaster() -> Toaster:
    return Toaster()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scheduler(clock: FakeClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture()
def idle_loop():
    """an event loop nobody is running, as when a Tk mainloop owns the thread"""
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture()
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "local_storage.json"


@pytest.fixture()
def store(store_path: Path) -> KeyValueStore:
    return KeyValueStore(store_path)
