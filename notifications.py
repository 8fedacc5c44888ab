# notifications.py
from __future__ import annotations
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List

logger = logging.getLogger(__name__)

SUCCESS = "success"
ERROR = "error"


@dataclass(frozen=True)
class Toast:
    level: str
    message: str


class Toaster:
    """
    Transient user-facing messages.
    A UI subscribes and shows them (e.g. tkinter messagebox); history is bounded.
    """

    def __init__(self, history: int = 20):
        self.history: Deque[Toast] = deque(maxlen=history)
        self._subscribers: List[Callable[[Toast], None]] = []

    def subscribe(self, fn: Callable[[Toast], None]) -> Callable[[], None]:
        self._subscribers.append(fn)
        return lambda: self._subscribers.remove(fn) if fn in self._subscribers else None

    def _push(self, toast: Toast) -> None:
        self.history.append(toast)
        for fn in list(self._subscribers):
            try:
                fn(toast)
            except Exception:
                logger.exception("Toast subscriber failed")

    def success(self, message: str) -> None:
        logger.info(message)
        self._push(Toast(SUCCESS, message))

    def error(self, message: str) -> None:
        logger.warning(message)
        self._push(Toast(ERROR, message))

    @property
    def last(self):
        return self.history[-1] if self.history else None
