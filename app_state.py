# app_state.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, List, Optional, Set

from backend import (
    Backend, AuthUser, ChangeEvent,
    TODO_LISTS, TODO_LIST_MEMBERS, TODOS, FOCUS_SESSIONS,
)
from errors import BackendError
from models import AppStats, FocusSession, Profile, TodoList
from profiles import ensure_profile
from stats import compute_app_stats, utc_today

logger = logging.getLogger(__name__)

UNAUTHENTICATED = "unauthenticated"
LOADING = "loading"
READY = "ready"

# tables whose changes invalidate the cached stats
WATCHED_TABLES = (TODOS, FOCUS_SESSIONS)


@dataclass
class DataProvider:
    """
    Holds the signed-in user's lists, profile and stats and keeps them in sync.

    Refreshes on auth changes, on refresh_data() and on any realtime change to
    todos / focus_sessions. Every refresh replaces all fields wholesale, so
    overlapping refreshes simply let the last completion win. Refresh requests
    made before a queued refresh starts share it.
    """
    backend: Backend
    today: Callable[[], date] = utc_today

    lists: List[TodoList] = field(default_factory=list)
    profile: Optional[Profile] = None
    stats: Optional[AppStats] = None
    loading: bool = True
    status: str = UNAUTHENTICATED

    _user: Optional[AuthUser] = field(default=None, repr=False)
    _subscribers: List[Callable[[], None]] = field(default_factory=list, repr=False)
    _realtime: List[Callable[[], None]] = field(default_factory=list, repr=False)
    _auth_unsub: Optional[Callable[[], None]] = field(default=None, repr=False)
    _queued: Optional["asyncio.Future[Any]"] = field(default=None, repr=False)
    _tasks: Set["asyncio.Future[Any]"] = field(default_factory=set, repr=False)
    _generation: int = field(default=0, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def user_id(self) -> Optional[str]:
        return self._user.id if self._user else None

    # ---------- pub-sub ----------
    def subscribe(self, fn: Callable[[], None]) -> Callable[[], None]:
        """Register a callback invoked whenever lists/profile/stats/loading change."""
        self._subscribers.append(fn)
        return lambda: self._subscribers.remove(fn) if fn in self._subscribers else None

    def _notify(self) -> None:
        for fn in list(self._subscribers):
            try:
                fn()
            except Exception:
                logger.exception("Data subscriber failed")

    # ---------- lifecycle ----------
    async def start(self) -> None:
        """Pick up the current session and follow auth changes from now on."""
        self._auth_unsub = self.backend.on_auth_state_change(self._on_auth_change)
        try:
            user = await self.backend.get_user()
        except BackendError as e:
            logger.error("Auth check failed: %s", e)
            user = None
        if user is not None and user.id != self.user_id:
            await self._sign_in(user)
        elif user is None and self._user is None:
            self.loading = False
            self._notify()

    def close(self) -> None:
        """Stop listening. Fetches still in flight finish but are discarded."""
        self._closed = True
        if self._auth_unsub:
            self._auth_unsub()
            self._auth_unsub = None
        self._unsubscribe_realtime()
        self._subscribers.clear()

    async def settle(self) -> None:
        """wait for every fetch this provider has started"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _track(self, fut: "asyncio.Future[Any]") -> "asyncio.Future[Any]":
        self._tasks.add(fut)
        fut.add_done_callback(self._tasks.discard)
        return fut

    # ---------- auth ----------
    def _on_auth_change(self, event: str, user: Optional[AuthUser]) -> None:
        if self._closed:
            return
        logger.debug("Auth event %s", event)
        if user is not None:
            # token refreshes repeat the same user; only a new user reloads
            if user.id != self.user_id:
                self._track(asyncio.ensure_future(self._sign_in(user)))
        elif self._user is not None:
            self._sign_out()

    async def _sign_in(self, user: AuthUser) -> None:
        self._unsubscribe_realtime()
        self._generation += 1
        self._queued = None
        self._user = user
        self.status = LOADING
        self.loading = True
        logger.info("Loading data for %s", user.id)
        self._notify()
        await self._fetch(user)

    def _sign_out(self) -> None:
        logger.info("Signed out, clearing cached data")
        self._generation += 1
        self._unsubscribe_realtime()
        self._user = None
        self._queued = None
        self.lists = []
        self.profile = None
        self.stats = None
        self.loading = False
        self.status = UNAUTHENTICATED
        self._notify()

    # ---------- refresh ----------
    def request_refresh(self) -> Optional["asyncio.Future[Any]"]:
        """
        Schedule a refresh and return its future.
        Callers arriving in the same loop tick get the same future.
        """
        if self._closed or self._user is None:
            return None
        if self._queued is None:
            self._queued = self._track(asyncio.ensure_future(
                self._run_queued(self._user, self._generation)))
        return self._queued

    async def _run_queued(self, user: AuthUser, generation: int) -> None:
        await asyncio.sleep(0)
        if generation != self._generation:
            logger.debug("Skipping refresh queued for %s before an auth change", user.id)
            return
        self._queued = None
        await self._fetch(user, generation)

    async def refresh_data(self) -> None:
        fut = self.request_refresh()
        if fut is not None:
            await fut

    # ---------- realtime ----------
    def _on_change(self, change: ChangeEvent) -> None:
        logger.debug("Realtime %s on %s, refreshing", change.event, change.table)
        self.request_refresh()

    def _subscribe_realtime(self) -> None:
        if self._realtime:
            return
        for table in WATCHED_TABLES:
            self._realtime.append(self.backend.subscribe(table, self._on_change))

    def _unsubscribe_realtime(self) -> None:
        for unsubscribe in self._realtime:
            unsubscribe()
        self._realtime = []

    # ---------- fetch ----------
    async def _fetch_lists(self, uid: str) -> List[TodoList]:
        members = await self.backend.select(TODO_LIST_MEMBERS, {"user_id": uid})
        roles = {m["list_id"]: m.get("role") for m in members}
        if not roles:
            return []
        rows = await self.backend.select(TODO_LISTS, {"id": list(roles)}, order_by="created_at")
        return [TodoList.from_row(r, roles.get(r["id"])) for r in rows]

    async def _fetch_sessions(self, uid: str) -> List[FocusSession]:
        rows = await self.backend.select(FOCUS_SESSIONS, {"user_id": uid}, order_by="created_at")
        list_ids = {r["list_id"] for r in rows if r.get("list_id")}
        names = {}
        if list_ids:
            names = {l["id"]: l["name"] for l in await self.backend.select(TODO_LISTS, {"id": list(list_ids)})}
        return [FocusSession.from_row(r, names.get(r.get("list_id"))) for r in rows]

    async def _count_completed(self, uid: str) -> int:
        return await self.backend.count(TODOS, {"creator_id": uid, "done": True})

    async def _fetch(self, user: AuthUser, generation: Optional[int] = None) -> None:
        if generation is None:
            generation = self._generation
        lists, profile, sessions, completed = await asyncio.gather(
            self._fetch_lists(user.id),
            ensure_profile(self.backend, user),
            self._fetch_sessions(user.id),
            self._count_completed(user.id),
            return_exceptions=True,
        )
        if self._closed or generation != self._generation:
            logger.debug("Discarding fetch for %s", user.id)
            return

        for name, result in (("lists", lists), ("profile", profile),
                             ("sessions", sessions), ("completed todos", completed)):
            if isinstance(result, Exception):
                logger.error("Fetching %s for %s failed: %s", name, user.id, result)

        if not isinstance(lists, Exception):
            self.lists = lists
        if not isinstance(profile, Exception):
            self.profile = profile
        if not isinstance(sessions, Exception):
            tasks_done = completed if isinstance(completed, int) else 0
            self.stats = compute_app_stats(sessions, tasks_done, self.today())

        self.loading = False
        self.status = READY
        self._subscribe_realtime()
        self._notify()
