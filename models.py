# models.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

INBOX_NAME = "Inbox"
GENERAL_SUBJECT = "General"

ROLE_OWNER = "owner"
ROLE_EDITOR = "editor"

# timer modes
FOCUS = "focus"
SHORT_BREAK = "shortBreak"
LONG_BREAK = "longBreak"


@dataclass
class TodoList:
    id: str
    name: str
    owner_id: str
    created_at: Optional[str] = None
    user_role: Optional[str] = None  # caller's role, filled from membership

    @classmethod
    def from_row(cls, row: Dict[str, Any], role: Optional[str] = None) -> "TodoList":
        return cls(id=row["id"], name=row["name"], owner_id=row["owner_id"],
                   created_at=row.get("created_at"), user_role=role)

    @property
    def is_inbox(self) -> bool:
        return self.name == INBOX_NAME

    @property
    def is_owner(self) -> bool:
        return self.user_role == ROLE_OWNER


@dataclass
class Todo:
    id: str
    creator_id: str
    list_id: str
    title: str
    done: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Todo":
        return cls(id=row["id"], creator_id=row["creator_id"], list_id=row["list_id"],
                   title=row["title"], done=bool(row.get("done", False)),
                   created_at=row.get("created_at"))


@dataclass
class TodoImage:
    id: str
    todo_id: str
    uploader_id: str
    list_id: str
    storage_path: str
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TodoImage":
        return cls(id=row["id"], todo_id=row["todo_id"], uploader_id=row["uploader_id"],
                   list_id=row["list_id"], storage_path=row["storage_path"],
                   created_at=row.get("created_at"))


@dataclass
class FocusSession:
    """One completed countdown. `list_name` is joined in on read."""
    id: str
    user_id: str
    duration_seconds: int
    mode: str
    created_at: Optional[str] = None
    list_id: Optional[str] = None
    list_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], list_name: Optional[str] = None) -> "FocusSession":
        return cls(id=row["id"], user_id=row["user_id"],
                   duration_seconds=int(row.get("duration_seconds") or 0),
                   mode=row.get("mode", FOCUS), created_at=row.get("created_at"),
                   list_id=row.get("list_id"), list_name=list_name)


@dataclass
class Profile:
    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(id=row["id"], username=row.get("username"), full_name=row.get("full_name"),
                   email=row.get("email"), avatar_url=row.get("avatar_url"))


@dataclass
class AppStats:
    """Derived dashboard numbers. Never persisted."""
    total_hours: str = "0.0h"
    tasks_completed: int = 0
    streak: int = 0
    avg_session: str = "0m"
    weekly_data: List[Dict[str, Any]] = field(default_factory=list)   # [{day, date, minutes}]
    subject_data: List[Dict[str, Any]] = field(default_factory=list)  # [{name, value}]


@dataclass
class LeaderboardEntry:
    user_id: str
    username: Optional[str]
    avatar_url: Optional[str]
    total_minutes: int
    rank: int


@dataclass
class ActivityEvent:
    id: str
    user_id: str
    duration_seconds: int
    created_at: Optional[str]
    username: str
    avatar_url: Optional[str] = None
