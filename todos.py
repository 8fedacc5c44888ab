# todos.py
from __future__ import annotations
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from backend import (
    Backend,
    TODO_LISTS, TODO_LIST_MEMBERS, TODOS, TODO_IMAGES,
)
from errors import BackendError
from models import INBOX_NAME, ROLE_EDITOR, ROLE_OWNER, Todo, TodoImage, TodoList
from notifications import Toaster

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "todo-images"


class TodoService:
    """
    List and todo mutations for one signed-in user.
    Failures are logged and toasted; methods then return None / False.
    """

    def __init__(self, backend: Backend, toaster: Toaster, user_id: str, bucket: str = DEFAULT_BUCKET):
        self.backend = backend
        self.toaster = toaster
        self.user_id = user_id
        self.bucket = bucket

    def _fail(self, e: BackendError, action: str) -> None:
        logger.error("%s failed for %s: %s", action, self.user_id, e)
        self.toaster.error(e.message)

    # ---------- lists ----------
    async def lists(self) -> List[TodoList]:
        members = await self.backend.select(TODO_LIST_MEMBERS, {"user_id": self.user_id})
        roles = {m["list_id"]: m.get("role") for m in members}
        if not roles:
            return []
        rows = await self.backend.select(TODO_LISTS, {"id": list(roles)}, order_by="created_at")
        return [TodoList.from_row(r, roles[r["id"]]) for r in rows]

    async def _role(self, list_id: str) -> Optional[str]:
        row = await self.backend.select_one(TODO_LIST_MEMBERS, {"list_id": list_id, "user_id": self.user_id})
        return row.get("role") if row else None

    async def ensure_inbox(self) -> Optional[TodoList]:
        """
        Make sure the user owns an Inbox they are a member of.
        Creates it on first access and repairs a missing owner membership.
        """
        try:
            existing = await self.backend.select_one(TODO_LISTS, {"owner_id": self.user_id, "name": INBOX_NAME})
            if existing is not None:
                if await self._role(existing["id"]) is None:
                    logger.info("Repairing Inbox membership for %s", self.user_id)
                    await self.backend.upsert(TODO_LIST_MEMBERS, {
                        "list_id": existing["id"], "user_id": self.user_id, "role": ROLE_OWNER})
                return TodoList.from_row(existing, ROLE_OWNER)

            row = await self.backend.insert(TODO_LISTS, {"owner_id": self.user_id, "name": INBOX_NAME})
            await self.backend.insert(TODO_LIST_MEMBERS, {
                "list_id": row["id"], "user_id": self.user_id, "role": ROLE_OWNER})
        except BackendError as e:
            self._fail(e, "Ensuring Inbox")
            return None
        logger.info("Created Inbox %s for %s", row["id"], self.user_id)
        return TodoList.from_row(row, ROLE_OWNER)

    async def create_list(self, name: str) -> Optional[TodoList]:
        name = (name or "").strip()
        if not name:
            return None
        try:
            row = await self.backend.insert(TODO_LISTS, {"owner_id": self.user_id, "name": name})
            await self.backend.insert(TODO_LIST_MEMBERS, {
                "list_id": row["id"], "user_id": self.user_id, "role": ROLE_OWNER})
        except BackendError as e:
            self._fail(e, "Creating list")
            return None
        self.toaster.success("Project created!")
        return TodoList.from_row(row, ROLE_OWNER)

    async def delete_list(self, list_id: str) -> bool:
        """Owner only; the Inbox is permanent. Todos and members go first."""
        try:
            row = await self.backend.select_one(TODO_LISTS, {"id": list_id})
            if row is None:
                self.toaster.error("Project not found.")
                return False
            if row["name"] == INBOX_NAME:
                self.toaster.error("The Inbox is a permanent project and cannot be deleted.")
                return False
            if await self._role(list_id) != ROLE_OWNER:
                self.toaster.error("Only the owner can delete this project.")
                return False

            await self.backend.delete(TODO_IMAGES, {"list_id": list_id})
            await self.backend.delete(TODOS, {"list_id": list_id})
            await self.backend.delete(TODO_LIST_MEMBERS, {"list_id": list_id})
            await self.backend.delete(TODO_LISTS, {"id": list_id})
        except BackendError as e:
            self._fail(e, "Deleting list")
            return False
        self.toaster.success("Project and all associated data deleted")
        return True

    async def leave_list(self, list_id: str) -> bool:
        try:
            role = await self._role(list_id)
            if role is None:
                return False
            if role == ROLE_OWNER:
                self.toaster.error("Owners cannot leave their own project.")
                return False
            await self.backend.delete(TODO_LIST_MEMBERS, {"list_id": list_id, "user_id": self.user_id})
        except BackendError as e:
            self._fail(e, "Leaving list")
            return False
        self.toaster.success("You left the project")
        return True

    async def invite(self, list_id: str, other_user_id: str) -> bool:
        """Add a collaborator as editor. Owner only."""
        other_user_id = (other_user_id or "").strip()
        if not other_user_id:
            return False
        try:
            if await self._role(list_id) != ROLE_OWNER:
                self.toaster.error("Only the owner can invite collaborators.")
                return False
            await self.backend.insert(TODO_LIST_MEMBERS, {
                "list_id": list_id, "user_id": other_user_id, "role": ROLE_EDITOR})
        except BackendError as e:
            self._fail(e, "Inviting collaborator")
            return False
        self.toaster.success("Collaborator added!")
        return True

    # ---------- todos ----------
    async def add_todo(self, list_id: str, title: str) -> Optional[Todo]:
        title = (title or "").strip()
        if not title:
            return None
        try:
            row = await self.backend.insert(TODOS, {
                "creator_id": self.user_id, "list_id": list_id, "title": title, "done": False})
        except BackendError as e:
            self._fail(e, "Adding todo")
            return None
        self.toaster.success("Todo added!")
        return Todo.from_row(row)

    async def set_done(self, todo_id: str, done: bool) -> bool:
        try:
            await self.backend.update(TODOS, {"id": todo_id}, {"done": bool(done)})
        except BackendError as e:
            self._fail(e, "Updating todo")
            return False
        return True

    async def rename_todo(self, todo_id: str, title: str) -> bool:
        title = (title or "").strip()
        if not title:
            return False
        try:
            await self.backend.update(TODOS, {"id": todo_id}, {"title": title})
        except BackendError as e:
            self._fail(e, "Renaming todo")
            return False
        return True

    async def delete_todo(self, todo_id: str) -> bool:
        try:
            await self.backend.delete(TODO_IMAGES, {"todo_id": todo_id})
            await self.backend.delete(TODOS, {"id": todo_id})
        except BackendError as e:
            self._fail(e, "Deleting todo")
            return False
        self.toaster.success("Todo deleted")
        return True

    # ---------- images ----------
    async def attach_image(self, todo: Todo, filename: str, data: bytes) -> Optional[TodoImage]:
        """Upload under <user>/<todo>/<uuid>.<ext>, then record the row."""
        ext = filename.rsplit(".", 1)[-1] if "." in filename else "jpg"
        path = f"{self.user_id}/{todo.id}/{uuid.uuid4()}.{ext}"
        try:
            await self.backend.upload(self.bucket, path, data)
            row = await self.backend.insert(TODO_IMAGES, {
                "todo_id": todo.id, "uploader_id": self.user_id,
                "list_id": todo.list_id, "storage_path": path})
        except BackendError as e:
            self._fail(e, "Uploading image")
            return None
        self.toaster.success("Image uploaded!")
        return TodoImage.from_row(row)

    def image_url(self, image: TodoImage) -> str:
        return self.backend.public_url(self.bucket, image.storage_path)


class TodoBoard:
    """
    Page-local view of one list: todos newest first, images grouped by todo.
    Re-fetches whenever a change for this list comes in.
    """

    def __init__(self, backend: Backend, toaster: Toaster, list_id: str):
        self.backend = backend
        self.toaster = toaster
        self.list_id = list_id
        self.todos: List[Todo] = []
        self.images_by_todo: Dict[str, List[TodoImage]] = {}
        self._unsubs: List[Callable[[], None]] = []
        self._subscribers: List[Callable[[], None]] = []
        self._tasks: set = set()

    def subscribe(self, fn: Callable[[], None]) -> None:
        self._subscribers.append(fn)

    def _notify(self) -> None:
        for fn in list(self._subscribers):
            try:
                fn()
            except Exception:
                logger.exception("Board subscriber failed")

    @property
    def completed_count(self) -> int:
        return sum(1 for t in self.todos if t.done)

    async def open(self) -> None:
        await asyncio.gather(self.load_todos(), self.load_images())
        flt = {"list_id": self.list_id}
        self._unsubs = [
            self.backend.subscribe(TODOS, lambda _c: self._spawn(self.load_todos()), filters=flt),
            self.backend.subscribe(TODO_IMAGES, lambda _c: self._spawn(self.load_images()), filters=flt),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubs:
            unsubscribe()
        self._unsubs = []

    async def settle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def load_todos(self) -> None:
        try:
            rows = await self.backend.select(TODOS, {"list_id": self.list_id},
                                             order_by="created_at", descending=True)
        except BackendError as e:
            logger.error("Loading todos for %s failed: %s", self.list_id, e)
            self.toaster.error(e.message)
            return
        self.todos = [Todo.from_row(r) for r in rows]
        self._notify()

    async def load_images(self) -> None:
        try:
            rows = await self.backend.select(TODO_IMAGES, {"list_id": self.list_id},
                                             order_by="created_at", descending=True)
        except BackendError as e:
            logger.error("Loading images for %s failed: %s", self.list_id, e)
            self.toaster.error(e.message)
            return
        grouped: Dict[str, List[TodoImage]] = {}
        for r in rows:
            grouped.setdefault(r["todo_id"], []).append(TodoImage.from_row(r))
        self.images_by_todo = grouped
        self._notify()
