# timer.py
from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from backend import Backend, FOCUS_SESSIONS
from errors import BackendError
from models import FOCUS, SHORT_BREAK, LONG_BREAK
from notifications import Toaster
from storage import KeyValueStore

logger = logging.getLogger(__name__)

MODE_CONFIG: Dict[str, Dict[str, Any]] = {
    FOCUS: {"duration": 25 * 60, "label": "Focus Time"},
    SHORT_BREAK: {"duration": 5 * 60, "label": "Short Break"},
    LONG_BREAK: {"duration": 15 * 60, "label": "Long Break"},
}

FOCUS_DONE_MESSAGE = "Study session complete! Take a well-deserved break."
BREAK_DONE_MESSAGE = "Break's over! Ready to get back into focus mode?"

# local store keys
KEY_MODE = "focus-mode"
KEY_TIME = "focus-time"
KEY_ACTIVE = "focus-active"
KEY_END = "focus-end"

IDLE = "idle"
RUNNING = "running"
PAUSED = "paused"

TICK_MS = 1000


def mode_duration(mode: str) -> int:
    return int(MODE_CONFIG[mode]["duration"])


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class LoopScheduler:
    """
    after / after_cancel on an asyncio loop.
    Same shape as a Tk root, so either can drive the timer. A Tk root needs
    the timer built with loop= so finished sessions have somewhere to be written.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def after(self, ms: int, fn: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(ms / 1000.0, fn)

    def after_cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class FocusTimer:
    """
    The app-wide Pomodoro countdown.
    supports toggle (start/pause), reset, mode switch, and records a focus
    session through the backend when a countdown runs out.

    A target end timestamp is kept while running and written to the local
    store on every change, so a reload recomputes the time left from the
    clock instead of trusting a stale counter.
    """

    def __init__(self,
                 store: KeyValueStore,
                 backend: Backend,
                 toaster: Optional[Toaster] = None,
                 clock: Callable[[], float] = time.time,
                 scheduler: Any = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self._store = store
        self._backend = backend
        self._toaster = toaster
        self._clock = clock
        self._loop = loop

        self._mode = FOCUS
        self._remaining = mode_duration(FOCUS)
        self._active = False
        self._end_ts: Optional[float] = None  # target end timestamp while running
        self._current_list_id: Optional[str] = None

        self._scheduler: Any = None
        self._after_id: Any = None
        self._subscribers: List[Callable[[], None]] = []
        self._writes: Set["asyncio.Task[Any]"] = set()

        self._rehydrate()
        if scheduler is not None:
            self.attach(scheduler)

    # ----- properties -----
    @property
    def mode(self) -> str:
        return self._mode

    @property
    def time_left(self) -> int:
        """remaining seconds (>=0)"""
        return max(0, int(self._remaining))

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def state(self) -> str:
        if self._active:
            return RUNNING
        if self._remaining < mode_duration(self._mode):
            return PAUSED
        return IDLE

    @property
    def current_list_id(self) -> Optional[str]:
        return self._current_list_id

    @staticmethod
    def format_mmss(seconds: int) -> str:
        """format seconds as MM:SS"""
        mm, ss = divmod(max(0, int(seconds)), 60)
        return f"{mm:02d}:{ss:02d}"

    def subscribe(self, fn: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(fn)
        return lambda: self._subscribers.remove(fn) if fn in self._subscribers else None

    # ----- persistence -----
    def _rehydrate(self) -> None:
        mode = self._store.get(KEY_MODE)
        if mode in MODE_CONFIG:
            self._mode = mode
        full = mode_duration(self._mode)

        try:
            saved = int(self._store.get(KEY_TIME) or full)
        except ValueError:
            saved = full
        self._remaining = min(max(0, saved), full) or full

        self._active = self._store.get(KEY_ACTIVE) == "true"
        if self._active:
            try:
                self._end_ts = float(self._store.get(KEY_END) or "")
            except ValueError:
                # written before end timestamps were stored
                self._end_ts = self._clock() + self._remaining
            self._remaining = max(0, int(round(self._end_ts - self._clock())))
        logger.debug("Timer restored: %s %ss active=%s", self._mode, self._remaining, self._active)

    def _changed(self) -> None:
        self._store.set_many({
            KEY_MODE: self._mode,
            KEY_TIME: self.time_left,
            KEY_ACTIVE: "true" if self._active else "false",
            KEY_END: "" if self._end_ts is None else repr(self._end_ts),
        })
        for fn in list(self._subscribers):
            try:
                fn()
            except Exception:
                logger.exception("Timer subscriber failed")

    # ----- driver -----
    def attach(self, scheduler: Any) -> None:
        """
        Hand the timer something with after/after_cancel.
        A countdown restored as running resumes here.

        Sessions are written on the loop given to the constructor, or else on
        the loop running right now. Attaching with neither raises RuntimeError.
        """
        if self._loop is None:
            self._loop = _running_loop()
            if self._loop is None:
                raise RuntimeError("FocusTimer needs an event loop to record sessions, pass loop=")
        self.detach()
        self._scheduler = scheduler
        if self._active:
            self._schedule_next_tick()

    def detach(self) -> None:
        """Drop the driver (UI teardown). State stays as persisted."""
        self._cancel_after()
        self._scheduler = None

    # ----- outer controls -----
    def toggle_timer(self) -> None:
        if self._active:
            self._pause()
        else:
            self._start()

    def reset_timer(self) -> None:
        """back to idle at the full duration; nothing is recorded"""
        self._stop()
        self._remaining = mode_duration(self._mode)
        self._changed()

    def handle_mode_change(self, mode: str) -> None:
        if mode not in MODE_CONFIG:
            raise ValueError(f"unknown timer mode: {mode!r}")
        self._stop()
        self._mode = mode
        self._remaining = mode_duration(mode)
        self._changed()

    def set_current_list_id(self, list_id: Optional[str]) -> None:
        self._current_list_id = list_id

    async def flush(self) -> None:
        """wait for pending session writes"""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    # ----- internal methods -----
    def _start(self) -> None:
        if self._remaining <= 0:
            self._remaining = mode_duration(self._mode)
        self._active = True
        self._end_ts = self._clock() + self._remaining
        self._changed()
        self._schedule_next_tick()

    def _pause(self) -> None:
        self._cancel_after()
        if self._end_ts is not None:
            self._remaining = max(0, int(round(self._end_ts - self._clock())))
        if self._remaining <= 0:
            self._complete()
            return
        self._active = False
        self._end_ts = None
        self._changed()

    def _stop(self) -> None:
        self._cancel_after()
        self._active = False
        self._end_ts = None

    def _schedule_next_tick(self) -> None:
        """tick now, then again in a second while running"""
        if self._scheduler is None:
            return
        self._after_id = None
        self._tick()
        if self._active:
            self._after_id = self._scheduler.after(TICK_MS, self._schedule_next_tick)

    def _tick(self) -> None:
        if not self._active:
            return
        if self._end_ts is None:
            self._end_ts = self._clock() + self._remaining
        self._remaining = max(0, int(round(self._end_ts - self._clock())))
        if self._remaining <= 0:
            self._complete()
        else:
            self._changed()

    def _complete(self) -> None:
        mode = self._mode
        self._enqueue_write(mode, mode_duration(mode), self._current_list_id)
        self._stop()
        self._remaining = mode_duration(mode)
        self._changed()
        logger.info("%s countdown finished", mode)
        if self._toaster is not None:
            self._toaster.success(FOCUS_DONE_MESSAGE if mode == FOCUS else BREAK_DONE_MESSAGE)

    def _cancel_after(self) -> None:
        """cancel any pending scheduled tick"""
        if self._scheduler is not None and self._after_id is not None:
            self._scheduler.after_cancel(self._after_id)
        self._after_id = None

    # ----- session record -----
    def _enqueue_write(self, mode: str, duration: int, list_id: Optional[str]) -> None:
        loop = self._loop or _running_loop()
        if loop is None:
            raise RuntimeError(f"No event loop to record the {mode} session on")
        if loop.is_running() and loop is not _running_loop():
            # loop lives in another thread
            loop.call_soon_threadsafe(self._spawn_write, loop, mode, duration, list_id)
        else:
            self._spawn_write(loop, mode, duration, list_id)

    def _spawn_write(self, loop: asyncio.AbstractEventLoop, mode: str, duration: int,
                     list_id: Optional[str]) -> None:
        task = loop.create_task(self._save_session(mode, duration, list_id))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _save_session(self, mode: str, duration: int, list_id: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            user = await self._backend.get_user()
            if user is None:
                logger.warning("Nobody signed in, %s session not recorded", mode)
                return None
            row = await self._backend.insert(FOCUS_SESSIONS, {
                "user_id": user.id,
                "list_id": list_id,
                "duration_seconds": duration,
                "mode": mode,
            })
        except BackendError as e:
            logger.error("Error saving focus session: %s", e)
            if self._toaster is not None:
                self._toaster.error(f"Could not save your session: {e.message}")
            return None
        logger.info("Recorded %ss %s session for %s", duration, mode, user.id)
        return row
