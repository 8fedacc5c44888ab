# main.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from app_state import DataProvider
from backend import Backend, InMemoryBackend
from notifications import Toaster
from profiles import ProfileService
from storage import DEFAULT_CONFIG, DATA_DIR, KeyValueStore, ensure_data_files, load_config
from study_hall import StudyHall
from timer import FocusTimer, LoopScheduler
from todos import TodoService

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class App:
    """Everything the UI surfaces read from, wired to one backend."""
    config: Dict[str, Any]
    backend: Backend
    toaster: Toaster
    data: DataProvider
    timer: FocusTimer
    profiles: ProfileService

    def todos(self) -> Optional[TodoService]:
        """list/todo operations for whoever is signed in"""
        if self.data.user_id is None:
            return None
        return TodoService(self.backend, self.toaster, self.data.user_id,
                           bucket=self.config["image_bucket"])

    def study_hall(self) -> StudyHall:
        return StudyHall(self.backend, leaderboard_limit=int(self.config["leaderboard_limit"]),
                         feed_size=int(self.config["activity_feed_size"]))

    def close(self) -> None:
        self.timer.detach()
        self.data.close()


async def build_app(backend: Backend, data_dir: Optional[Path] = None, scheduler: Any = None) -> App:
    """Load config, restore the timer and start following auth state."""
    data_dir = Path(data_dir or DATA_DIR)
    ensure_data_files(DEFAULT_CONFIG, data_dir)
    config = load_config(data_dir)

    toaster = Toaster()
    data = DataProvider(backend)
    timer = FocusTimer(KeyValueStore(data_dir / config["timer_store"]), backend, toaster,
                       scheduler=scheduler or LoopScheduler())
    app = App(config=config, backend=backend, toaster=toaster, data=data,
              timer=timer, profiles=ProfileService(backend, toaster))
    await data.start()
    return app


async def demo(data_dir: Optional[Path] = None) -> App:
    """Sign up a demo user on the in-memory backend and print the dashboard."""
    backend = InMemoryBackend()
    app = await build_app(backend, data_dir)
    await backend.sign_up("demo@example.com", "demo-password", full_name="Demo Student")
    await app.data.settle()

    todos = app.todos()
    inbox = await todos.ensure_inbox()
    todo = await todos.add_todo(inbox.id, "Read chapter 3")
    await todos.set_done(todo.id, True)
    await app.profiles.save_profile(app.data.user_id, "Demo Student", "Demo Student")
    await app.data.refresh_data()
    await app.data.settle()

    stats = app.data.stats
    logger.info("Lists: %s", [l.name for l in app.data.lists])
    logger.info("Stats: %s total, %s done, streak %s", stats.total_hours, stats.tasks_completed, stats.streak)
    logger.info("Timer: %s %s", app.timer.mode, FocusTimer.format_mmss(app.timer.time_left))
    app.close()
    return app


def main() -> None:
    ensure_data_files(DEFAULT_CONFIG)
    setup_logging(load_config().get("log_level", "INFO"))
    asyncio.run(demo())


if __name__ == "__main__":
    main()
