# backend.py
from __future__ import annotations
import abc
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import BackendError, DuplicateError, NotFoundError, PermissionDenied
from stats import session_date, week_bounds

logger = logging.getLogger(__name__)

# tables
TODO_LISTS = "todo_lists"
TODO_LIST_MEMBERS = "todo_list_members"
TODOS = "todos"
TODO_IMAGES = "todo_images"
FOCUS_SESSIONS = "focus_sessions"
PROFILES = "profiles"
WEEKLY_LEADERBOARD = "weekly_leaderboard"  # read-only view

TABLES = (TODO_LISTS, TODO_LIST_MEMBERS, TODOS, TODO_IMAGES, FOCUS_SESSIONS, PROFILES)

# realtime events
INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ANY_EVENT = "*"

# auth events
SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

Row = Dict[str, Any]
Unsubscribe = Callable[[], None]


@dataclass
class AuthUser:
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChangeEvent:
    table: str
    event: str
    new: Row = field(default_factory=dict)
    old: Row = field(default_factory=dict)


def matches(row: Row, filters: Optional[Dict[str, Any]]) -> bool:
    """eq filter per key; a list/tuple/set value means `in`"""
    if not filters:
        return True
    for key, want in filters.items():
        have = row.get(key)
        if isinstance(want, (list, tuple, set, frozenset)):
            if have not in want:
                return False
        elif have != want:
            return False
    return True


class Backend(abc.ABC):
    """
    What the app needs from the hosted backend: row CRUD, change
    notifications, auth and object storage. Every call may raise BackendError.
    """

    # ----- rows -----
    @abc.abstractmethod
    async def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     order_by: Optional[str] = None, descending: bool = False,
                     limit: Optional[int] = None) -> List[Row]: ...

    async def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Row]:
        rows = await self.select(table, filters, limit=1)
        return rows[0] if rows else None

    @abc.abstractmethod
    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int: ...

    @abc.abstractmethod
    async def insert(self, table: str, row: Row) -> Row: ...

    @abc.abstractmethod
    async def upsert(self, table: str, row: Row) -> Row: ...

    @abc.abstractmethod
    async def update(self, table: str, filters: Dict[str, Any], changes: Row) -> List[Row]: ...

    @abc.abstractmethod
    async def delete(self, table: str, filters: Dict[str, Any]) -> int: ...

    # ----- realtime -----
    @abc.abstractmethod
    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None],
                  event: str = ANY_EVENT, filters: Optional[Dict[str, Any]] = None) -> Unsubscribe: ...

    # ----- auth -----
    @abc.abstractmethod
    async def get_user(self) -> Optional[AuthUser]: ...

    @abc.abstractmethod
    async def sign_up(self, email: str, password: str, **metadata: Any) -> AuthUser: ...

    @abc.abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthUser: ...

    @abc.abstractmethod
    async def sign_out(self) -> None: ...

    @abc.abstractmethod
    def on_auth_state_change(self, callback: Callable[[str, Optional[AuthUser]], None]) -> Unsubscribe: ...

    # ----- storage -----
    @abc.abstractmethod
    async def upload(self, bucket: str, path: str, data: bytes, upsert: bool = False) -> str: ...

    @abc.abstractmethod
    def public_url(self, bucket: str, path: str) -> str: ...


class InMemoryBackend(Backend):
    """
    In-process backend for development and tests.
    Change events are delivered synchronously right after each write.
    """

    # composite primary keys; everything else is keyed by "id"
    KEYS: Dict[str, Tuple[str, ...]] = {TODO_LIST_MEMBERS: ("list_id", "user_id")}
    UNIQUE: Dict[str, List[Tuple[str, ...]]] = {PROFILES: [("username",)]}
    STAMPED = (TODO_LISTS, TODOS, TODO_IMAGES, FOCUS_SESSIONS)

    def __init__(self, clock: Optional[Callable[[], datetime]] = None, latency: float = 0.0,
                 base_url: str = "http://localhost:54321"):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.latency = latency
        self.base_url = base_url.rstrip("/")
        self.tables: Dict[str, Dict[Tuple[Any, ...], Row]] = {t: {} for t in TABLES}
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self._subs: List[Tuple[str, str, Optional[Dict[str, Any]], Callable[[ChangeEvent], None]]] = []
        self._users: Dict[str, Tuple[str, AuthUser]] = {}
        self._current: Optional[AuthUser] = None
        self._auth_listeners: List[Callable[[str, Optional[AuthUser]], None]] = []
        self.failures: Dict[Tuple[str, str], BackendError] = {}
        self.calls: List[Tuple[str, str]] = []

    # ---------- test hooks ----------
    def fail(self, op: str, table: str, message: str = "backend unavailable", code: Optional[str] = None) -> None:
        """make every `op` on `table` raise until clear_failures()"""
        self.failures[(op, table)] = BackendError(message, code)

    def clear_failures(self) -> None:
        self.failures.clear()

    async def _enter(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        await asyncio.sleep(self.latency)
        err = self.failures.get((op, table))
        if err is not None:
            raise err

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def _table(self, table: str) -> Dict[Tuple[Any, ...], Row]:
        try:
            return self.tables[table]
        except KeyError:
            raise NotFoundError(f'relation "{table}" does not exist') from None

    def _key(self, table: str, row: Row) -> Tuple[Any, ...]:
        return tuple(row.get(k) for k in self.KEYS.get(table, ("id",)))

    def _check_unique(self, table: str, row: Row) -> None:
        key = self._key(table, row)
        for cols in self.UNIQUE.get(table, []):
            values = tuple(row.get(c) for c in cols)
            if any(v is None for v in values):
                continue
            for other_key, other in self._table(table).items():
                if other_key != key and tuple(other.get(c) for c in cols) == values:
                    raise DuplicateError(
                        f'duplicate key value violates unique constraint "{table}_{"_".join(cols)}_key"')

    def _emit(self, table: str, event: str, new: Row, old: Row) -> None:
        change = ChangeEvent(table, event, dict(new), dict(old))
        for sub_table, sub_event, filters, callback in list(self._subs):
            if sub_table != table or sub_event not in (ANY_EVENT, event):
                continue
            if not matches(new or old, filters):
                continue
            try:
                callback(change)
            except Exception:
                logger.exception("Realtime callback failed for %s %s", event, table)

    # ---------- rows ----------
    async def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        await self._enter("select", table)
        if table == WEEKLY_LEADERBOARD:
            rows = self._weekly_leaderboard()
        else:
            rows = [dict(r) for r in self._table(table).values() if matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def count(self, table, filters=None):
        await self._enter("count", table)
        return sum(1 for r in self._table(table).values() if matches(r, filters))

    def _prepare(self, table: str, row: Row) -> Row:
        new = dict(row)
        if self.KEYS.get(table, ("id",)) == ("id",) and not new.get("id"):
            new["id"] = str(uuid.uuid4())
        if table in self.STAMPED and not new.get("created_at"):
            new["created_at"] = self._now_iso()
        return new

    def _insert_now(self, table: str, row: Row) -> Row:
        if table == WEEKLY_LEADERBOARD:
            raise PermissionDenied(f'cannot insert into view "{table}"')
        new = self._prepare(table, row)
        key = self._key(table, new)
        rows = self._table(table)
        if key in rows:
            raise DuplicateError(f'duplicate key value violates unique constraint "{table}_pkey"')
        self._check_unique(table, new)
        rows[key] = new
        self._emit(table, INSERT, new, {})
        return dict(new)

    async def insert(self, table, row):
        await self._enter("insert", table)
        return self._insert_now(table, row)

    async def upsert(self, table, row):
        await self._enter("upsert", table)
        key = self._key(table, row)
        rows = self._table(table)
        if key not in rows or None in key:
            return self._insert_now(table, row)
        old = rows[key]
        new = {**old, **row}
        self._check_unique(table, new)
        rows[key] = new
        self._emit(table, UPDATE, new, old)
        return dict(new)

    async def update(self, table, filters, changes):
        await self._enter("update", table)
        rows = self._table(table)
        out = []
        for key, old in list(rows.items()):
            if not matches(old, filters):
                continue
            new = {**old, **changes}
            self._check_unique(table, new)
            rows[key] = new
            self._emit(table, UPDATE, new, old)
            out.append(dict(new))
        return out

    async def delete(self, table, filters):
        await self._enter("delete", table)
        rows = self._table(table)
        doomed = [k for k, r in rows.items() if matches(r, filters)]
        for key in doomed:
            old = rows.pop(key)
            self._emit(table, DELETE, {}, old)
        return len(doomed)

    def _weekly_leaderboard(self) -> List[Row]:
        monday, sunday = week_bounds(self._clock().astimezone(timezone.utc).date())
        seconds: Dict[str, int] = {}
        for s in self.tables[FOCUS_SESSIONS].values():
            d = session_date(s.get("created_at"))
            if s.get("mode") != "focus" or d is None or not (monday <= d <= sunday):
                continue
            seconds[s["user_id"]] = seconds.get(s["user_id"], 0) + int(s.get("duration_seconds") or 0)
        out = []
        for uid, total in seconds.items():
            profile = self.tables[PROFILES].get((uid,), {})
            out.append({"user_id": uid, "username": profile.get("username"),
                        "avatar_url": profile.get("avatar_url"), "total_minutes": total // 60})
        out.sort(key=lambda r: r["total_minutes"], reverse=True)
        return out

    # ---------- realtime ----------
    def subscribe(self, table, callback, event=ANY_EVENT, filters=None):
        sub = (table, event, dict(filters) if filters else None, callback)
        self._subs.append(sub)

        def unsubscribe() -> None:
            if sub in self._subs:
                self._subs.remove(sub)
        return unsubscribe

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    # ---------- auth ----------
    def _emit_auth(self, event: str, user: Optional[AuthUser]) -> None:
        for callback in list(self._auth_listeners):
            try:
                callback(event, user)
            except Exception:
                logger.exception("Auth listener failed on %s", event)

    async def get_user(self):
        await self._enter("get_user", "auth")
        return self._current

    async def sign_up(self, email, password, **metadata):
        await self._enter("sign_up", "auth")
        email = email.strip().lower()
        if email in self._users:
            raise DuplicateError("User already registered")
        user = AuthUser(id=str(uuid.uuid4()), email=email, metadata=dict(metadata))
        self._users[email] = (password, user)
        self._current = user
        self._emit_auth(SIGNED_IN, user)
        return user

    async def sign_in(self, email, password):
        await self._enter("sign_in", "auth")
        entry = self._users.get(email.strip().lower())
        if entry is None or entry[0] != password:
            raise BackendError("Invalid login credentials", "invalid_credentials")
        self._current = entry[1]
        self._emit_auth(SIGNED_IN, entry[1])
        return entry[1]

    async def sign_out(self):
        await self._enter("sign_out", "auth")
        self._current = None
        self._emit_auth(SIGNED_OUT, None)

    def refresh_session(self) -> None:
        if self._current is not None:
            self._emit_auth(TOKEN_REFRESHED, self._current)

    def on_auth_state_change(self, callback):
        self._auth_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._auth_listeners:
                self._auth_listeners.remove(callback)
        return unsubscribe

    # ---------- storage ----------
    async def upload(self, bucket, path, data, upsert=False):
        await self._enter("upload", bucket)
        objects = self.buckets.setdefault(bucket, {})
        if path in objects and not upsert:
            raise DuplicateError("The resource already exists")
        objects[path] = bytes(data)
        return path

    def public_url(self, bucket, path):
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"
