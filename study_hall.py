# study_hall.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from backend import Backend, ChangeEvent, FOCUS_SESSIONS, PROFILES, WEEKLY_LEADERBOARD, INSERT
from errors import BackendError
from models import ActivityEvent, LeaderboardEntry, FOCUS

logger = logging.getLogger(__name__)

ANONYMOUS = "Anonymous"
ANONYMOUS_LIVE = "Anonymous Scholar"


class StudyHall:
    """
    Weekly leaderboard plus a short live feed of finished focus sessions.
    Read failures are logged and leave the previous data in place.
    """

    def __init__(self, backend: Backend, leaderboard_limit: int = 50, feed_size: int = 5):
        self.backend = backend
        self.leaderboard_limit = leaderboard_limit
        self.feed_size = feed_size
        self.leaderboard: List[LeaderboardEntry] = []
        self.activity_feed: List[ActivityEvent] = []
        self.loading = True
        self._unsub: Optional[Callable[[], None]] = None
        self._subscribers: List[Callable[[], None]] = []
        self._tasks: set = set()

    def subscribe(self, fn: Callable[[], None]) -> None:
        self._subscribers.append(fn)

    def _notify(self) -> None:
        for fn in list(self._subscribers):
            try:
                fn()
            except Exception:
                logger.exception("Study hall subscriber failed")

    async def open(self) -> None:
        await asyncio.gather(self.fetch_leaderboard(), self.fetch_recent_activity())
        self.loading = False
        self._unsub = self.backend.subscribe(FOCUS_SESSIONS, self._on_insert, event=INSERT)
        self._notify()

    def close(self) -> None:
        if self._unsub:
            self._unsub()
            self._unsub = None

    async def settle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def fetch_leaderboard(self) -> None:
        try:
            rows = await self.backend.select(WEEKLY_LEADERBOARD, limit=self.leaderboard_limit)
        except BackendError as e:
            logger.error("Error fetching leaderboard: %s", e)
            return
        # the view comes back ordered; rank is the position
        self.leaderboard = [
            LeaderboardEntry(user_id=r["user_id"], username=r.get("username"),
                             avatar_url=r.get("avatar_url"),
                             total_minutes=int(r.get("total_minutes") or 0), rank=i + 1)
            for i, r in enumerate(rows)
        ]
        self._notify()

    async def _profiles(self, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        if not user_ids:
            return {}
        rows = await self.backend.select(PROFILES, {"id": user_ids})
        return {p["id"]: p for p in rows}

    async def fetch_recent_activity(self) -> None:
        try:
            rows = await self.backend.select(FOCUS_SESSIONS, {"mode": FOCUS}, order_by="created_at",
                                             descending=True, limit=self.feed_size)
            profiles = await self._profiles(sorted({r["user_id"] for r in rows}))
        except BackendError as e:
            logger.error("Error fetching activity: %s", e)
            return
        self.activity_feed = [self._event(r, profiles.get(r["user_id"]), ANONYMOUS) for r in rows]
        self._notify()

    @staticmethod
    def _event(row: Dict[str, Any], profile: Optional[Dict[str, Any]], fallback: str) -> ActivityEvent:
        profile = profile or {}
        return ActivityEvent(id=row["id"], user_id=row["user_id"],
                             duration_seconds=int(row.get("duration_seconds") or 0),
                             created_at=row.get("created_at"),
                             username=profile.get("username") or fallback,
                             avatar_url=profile.get("avatar_url"))

    def _on_insert(self, change: ChangeEvent) -> None:
        if change.new.get("mode") != FOCUS:
            return
        task = asyncio.ensure_future(self._push_live(change.new))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _push_live(self, row: Dict[str, Any]) -> None:
        try:
            profile = await self.backend.select_one(PROFILES, {"id": row["user_id"]})
        except BackendError as e:
            logger.error("Could not load profile for live event: %s", e)
            profile = None
        event = self._event(row, profile, ANONYMOUS_LIVE)
        self.activity_feed = [event] + self.activity_feed[: self.feed_size - 1]
        self._notify()
        await self.fetch_leaderboard()
