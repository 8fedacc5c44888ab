# errors.py
from __future__ import annotations
from typing import Optional

# Postgres unique_violation; the hosted backend reports duplicates with it
UNIQUE_VIOLATION = "23505"


class BackendError(Exception):
    """Any failed call against the backend (network, auth, validation)."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class DuplicateError(BackendError):
    """A unique constraint rejected the write."""

    def __init__(self, message: str = "duplicate key value violates unique constraint"):
        super().__init__(message, UNIQUE_VIOLATION)


class NotFoundError(BackendError):
    pass


class PermissionDenied(BackendError):
    pass


class ValidationError(BackendError):
    pass


class UsernameTakenError(DuplicateError):
    def __init__(self, username: str):
        super().__init__(f"Username '{username}' is already taken")
        self.username = username
