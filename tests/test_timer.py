import asyncio
import threading

import pytest

from backend import FOCUS_SESSIONS
from storage import KeyValueStore
from timer import (
    FOCUS_DONE_MESSAGE, IDLE, PAUSED, RUNNING, FocusTimer, LoopScheduler, MODE_CONFIG,
)


def make_timer(store, backend, toaster, clock, scheduler=None, loop=None):
    return FocusTimer(store, backend, toaster, clock=clock, scheduler=scheduler, loop=loop)


def sessions(backend):
    return list(backend.tables[FOCUS_SESSIONS].values())


# ---- basic state machine ----

def test_fresh_timer_is_idle_focus(store, backend, toaster, clock):
    timer = make_timer(store, backend, toaster, clock)
    assert timer.mode == "focus"
    assert timer.time_left == 1500
    assert not timer.is_active
    assert timer.state == IDLE


def test_mode_durations_are_fixed():
    assert {m: c["duration"] for m, c in MODE_CONFIG.items()} == {
        "focus": 1500, "shortBreak": 300, "longBreak": 900,
    }


def test_full_focus_countdown_records_one_session(store, backend, toaster, clock, scheduler):
    async def scenario():
        await backend.sign_up("ada@example.com", "pw")
        timer = make_timer(store, backend, toaster, clock, scheduler)
        timer.toggle_timer()
        assert timer.state == RUNNING

        scheduler.advance(1499)
        assert timer.time_left == 1
        assert timer.is_active

        scheduler.advance(1)
        assert timer.state == IDLE
        assert timer.time_left == 1500
        assert timer.mode == "focus"
        assert scheduler.jobs == {}
        await timer.flush()
        return timer

    asyncio.run(scenario())
    rows = sessions(backend)
    assert len(rows) == 1
    assert rows[0]["duration_seconds"] == 1500
    assert rows[0]["mode"] == "focus"
    assert rows[0]["list_id"] is None
    assert toaster.last.message == FOCUS_DONE_MESSAGE


def test_pause_freezes_and_resume_continues(store, backend, toaster, clock, scheduler, idle_loop):
    timer = make_timer(store, backend, toaster, clock, scheduler, loop=idle_loop)
    timer.handle_mode_change("shortBreak")
    timer.toggle_timer()
    scheduler.advance(10)
    timer.toggle_timer()
    assert timer.state == PAUSED
    assert timer.time_left == 290
    assert scheduler.jobs == {}

    scheduler.advance(30)
    assert timer.time_left == 290

    timer.toggle_timer()
    scheduler.advance(5)
    assert timer.time_left == 285


def test_mode_change_while_running_discards_progress(store, backend, toaster, clock, scheduler, idle_loop):
    timer = make_timer(store, backend, toaster, clock, scheduler, loop=idle_loop)
    timer.handle_mode_change("shortBreak")
    timer.toggle_timer()
    scheduler.advance(180)
    assert timer.time_left == 120

    timer.handle_mode_change("longBreak")
    assert timer.state == IDLE
    assert timer.time_left == 900
    assert scheduler.jobs == {}
    assert sessions(backend) == []


def test_reset_records_nothing(store, backend, toaster, clock, scheduler, idle_loop):
    timer = make_timer(store, backend, toaster, clock, scheduler, loop=idle_loop)
    timer.toggle_timer()
    scheduler.advance(600)
    timer.reset_timer()
    assert timer.state == IDLE
    assert timer.time_left == 1500
    assert scheduler.jobs == {}
    assert sessions(backend) == []


def test_unknown_mode_rejected(store, backend, toaster, clock):
    timer = make_timer(store, backend, toaster, clock)
    with pytest.raises(ValueError):
        timer.handle_mode_change("nap")


def test_session_carries_current_list(store, backend, toaster, clock, scheduler):
    async def scenario():
        await backend.sign_up("ada@example.com", "pw")
        timer = make_timer(store, backend, toaster, clock, scheduler)
        timer.set_current_list_id("list-1")
        timer.handle_mode_change("shortBreak")
        timer.toggle_timer()
        scheduler.advance(300)
        await timer.flush()

    asyncio.run(scenario())
    rows = sessions(backend)
    assert [(r["mode"], r["duration_seconds"], r["list_id"]) for r in rows] == [("shortBreak", 300, "list-1")]


# ---- failures ----

def test_write_failure_does_not_block_timer(store, backend, toaster, clock, scheduler):
    async def scenario():
        await backend.sign_up("ada@example.com", "pw")
        backend.fail("insert", FOCUS_SESSIONS, "network down")
        timer = make_timer(store, backend, toaster, clock, scheduler)
        timer.handle_mode_change("shortBreak")
        timer.toggle_timer()
        scheduler.advance(300)
        assert timer.state == IDLE
        await timer.flush()
        return timer

    timer = asyncio.run(scenario())
    assert timer.time_left == 300
    assert sessions(backend) == []
    assert toaster.last.level == "error"
    assert "network down" in toaster.last.message


def test_nothing_recorded_when_signed_out(store, backend, toaster, clock, scheduler):
    async def scenario():
        timer = make_timer(store, backend, toaster, clock, scheduler)
        timer.handle_mode_change("shortBreak")
        timer.toggle_timer()
        scheduler.advance(300)
        await timer.flush()

    asyncio.run(scenario())
    assert sessions(backend) == []


# ---- persistence ----

def test_state_is_persisted_on_every_change(store_path, backend, toaster, clock, scheduler, idle_loop):
    timer = make_timer(KeyValueStore(store_path), backend, toaster, clock, scheduler, loop=idle_loop)
    timer.handle_mode_change("longBreak")
    timer.toggle_timer()
    scheduler.advance(3)

    on_disk = KeyValueStore(store_path)
    assert on_disk.get("focus-mode") == "longBreak"
    assert on_disk.get("focus-time") == "897"
    assert on_disk.get("focus-active") == "true"
    assert float(on_disk.get("focus-end")) == clock.now + 897


def test_reload_deducts_time_spent_away(store_path, backend, toaster, clock, scheduler, idle_loop):
    timer = make_timer(KeyValueStore(store_path), backend, toaster, clock, scheduler, loop=idle_loop)
    timer.toggle_timer()
    scheduler.advance(100)
    timer.detach()

    clock.now += 200
    reloaded = make_timer(KeyValueStore(store_path), backend, toaster, clock, loop=idle_loop)
    assert reloaded.is_active
    assert reloaded.time_left == 1200

    reloaded.attach(scheduler)
    scheduler.advance(10)
    assert reloaded.time_left == 1190


def test_reload_of_paused_timer_keeps_remaining(store_path, backend, toaster, clock, scheduler, idle_loop):
    timer = make_timer(KeyValueStore(store_path), backend, toaster, clock, scheduler, loop=idle_loop)
    timer.toggle_timer()
    scheduler.advance(60)
    timer.toggle_timer()

    clock.now += 3600
    reloaded = make_timer(KeyValueStore(store_path), backend, toaster, clock, scheduler, loop=idle_loop)
    assert reloaded.state == PAUSED
    assert reloaded.time_left == 1440


def test_countdown_that_expired_while_away_completes_on_attach(store_path, backend, toaster, clock, scheduler):
    async def scenario():
        await backend.sign_up("ada@example.com", "pw")
        timer = make_timer(KeyValueStore(store_path), backend, toaster, clock, scheduler)
        timer.toggle_timer()
        timer.detach()
        clock.now += 5000

        reloaded = make_timer(KeyValueStore(store_path), backend, toaster, clock, scheduler)
        assert reloaded.state == IDLE
        await reloaded.flush()
        return reloaded

    reloaded = asyncio.run(scenario())
    assert reloaded.time_left == 1500
    assert len(sessions(backend)) == 1


def test_corrupt_store_falls_back_to_defaults(store_path, backend, toaster, clock):
    store_path.write_text("{not json", encoding="utf-8")
    timer = make_timer(KeyValueStore(store_path), backend, toaster, clock)
    assert timer.mode == "focus"
    assert timer.time_left == 1500


def test_format_mmss():
    assert FocusTimer.format_mmss(1500) == "25:00"
    assert FocusTimer.format_mmss(61) == "01:01"


def test_loop_scheduler_drives_a_real_loop(store, backend, toaster):
    async def scenario():
        timer = FocusTimer(store, backend, toaster, scheduler=LoopScheduler())
        timer.toggle_timer()
        await asyncio.sleep(0)
        assert timer.is_active
        timer.toggle_timer()
        return timer

    timer = asyncio.run(scenario())
    assert timer.state in (PAUSED, IDLE)
    assert not timer.is_active


# ---- drivers outside the event loop ----

def test_attaching_without_any_loop_fails(store, backend, toaster, clock, scheduler):
    with pytest.raises(RuntimeError):
        make_timer(store, backend, toaster, clock, scheduler)


def test_driver_outside_the_loop_records_on_the_given_loop(store, backend, toaster, clock, scheduler, idle_loop):
    idle_loop.run_until_complete(backend.sign_up("ada@example.com", "pw"))
    timer = make_timer(store, backend, toaster, clock, scheduler, loop=idle_loop)
    timer.handle_mode_change("shortBreak")
    timer.toggle_timer()
    scheduler.advance(300)
    assert timer.state == IDLE

    idle_loop.run_until_complete(timer.flush())
    assert [(r["mode"], r["duration_seconds"]) for r in sessions(backend)] == [("shortBreak", 300)]


def test_driver_with_loop_in_another_thread(store, backend, toaster, clock, scheduler):
    loop = asyncio.new_event_loop()
    worker = threading.Thread(target=loop.run_forever, daemon=True)
    worker.start()
    try:
        asyncio.run_coroutine_threadsafe(backend.sign_up("ada@example.com", "pw"), loop).result(5)
        timer = make_timer(store, backend, toaster, clock, scheduler, loop=loop)
        timer.handle_mode_change("shortBreak")
        timer.toggle_timer()
        scheduler.advance(300)
        asyncio.run_coroutine_threadsafe(timer.flush(), loop).result(5)
    finally:
        loop.call_soon_threadsafe(loop.stop)
        worker.join(5)
        loop.close()

    assert [(r["mode"], r["duration_seconds"]) for r in sessions(backend)] == [("shortBreak", 300)]
