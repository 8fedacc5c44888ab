# profiles.py
from __future__ import annotations
import logging
import re
from typing import Optional

from backend import Backend, AuthUser, PROFILES
from errors import BackendError, DuplicateError, UsernameTakenError, ValidationError
from models import Profile
from notifications import Toaster

logger = logging.getLogger(__name__)

MIN_USERNAME_LEN = 3


def normalize_username(raw: str) -> str:
    """'Ada Lovelace ' -> 'ada_lovelace'"""
    return re.sub(r"\s+", "_", (raw or "").strip()).lower()


async def ensure_profile(backend: Backend, user: AuthUser) -> Profile:
    """Fetch the user's profile row, creating a bare one on first use."""
    row = await backend.select_one(PROFILES, {"id": user.id})
    if row is None:
        logger.info("Creating profile for %s", user.id)
        row = await backend.upsert(PROFILES, {
            "id": user.id,
            "email": user.email,
            "full_name": user.metadata.get("full_name"),
            "avatar_url": user.metadata.get("avatar_url"),
        })
    return Profile.from_row(row)


class ProfileService:
    """Settings-page operations on the signed-in user's profile."""

    def __init__(self, backend: Backend, toaster: Toaster):
        self.backend = backend
        self.toaster = toaster

    async def save_profile(self, user_id: str, username: str, full_name: Optional[str] = None) -> Profile:
        """
        Store a new username / full name.
        Raises ValidationError for short names and UsernameTakenError when
        another user owns the name; the stored row is left untouched then.
        """
        name = normalize_username(username)
        if len(name) < MIN_USERNAME_LEN:
            self.toaster.error(f"Username must be at least {MIN_USERNAME_LEN} characters")
            raise ValidationError("username too short", "username_length")

        changes = {"id": user_id, "username": name}
        if full_name is not None:
            changes["full_name"] = full_name
        try:
            row = await self.backend.upsert(PROFILES, changes)
        except DuplicateError:
            self.toaster.error("Username is already taken!")
            raise UsernameTakenError(name) from None
        except BackendError as e:
            logger.error("Profile update failed for %s: %s (%s)", user_id, e.message, e.code)
            self.toaster.error(f"Update Error: {e.message or e.code or 'Unknown Error'}")
            raise

        self.toaster.success("Profile updated successfully!")
        return Profile.from_row(row)
