import asyncio

import pytest

from backend import PROFILES
from errors import BackendError, DuplicateError, UsernameTakenError, ValidationError
from profiles import ProfileService, ensure_profile, normalize_username


def test_normalize_username():
    assert normalize_username("  Ada  Lovelace ") == "ada_lovelace"
    assert normalize_username("GRACE") == "grace"


def test_ensure_profile_creates_once(backend):
    async def scenario():
        user = await backend.sign_up("ada@example.com", "pw", full_name="Ada L")
        first = await ensure_profile(backend, user)
        second = await ensure_profile(backend, user)
        return user, first, second

    user, first, second = asyncio.run(scenario())
    assert first == second
    assert first.email == "ada@example.com"
    assert first.full_name == "Ada L"
    assert len(backend.tables[PROFILES]) == 1


def test_save_profile_normalizes(backend, toaster):
    async def scenario():
        user = await backend.sign_up("ada@example.com", "pw")
        return await ProfileService(backend, toaster).save_profile(user.id, "Ada Lovelace", "Ada")

    profile = asyncio.run(scenario())
    assert profile.username == "ada_lovelace"
    assert profile.full_name == "Ada"
    assert toaster.last.message == "Profile updated successfully!"


def test_username_only_keeps_full_name(backend, toaster):
    async def scenario():
        user = await backend.sign_up("ada@example.com", "pw", full_name="Ada L")
        await ensure_profile(backend, user)
        return await ProfileService(backend, toaster).save_profile(user.id, "ada")

    profile = asyncio.run(scenario())
    assert profile.username == "ada"
    assert profile.full_name == "Ada L"


def test_short_username_rejected(backend, toaster):
    async def scenario():
        user = await backend.sign_up("ada@example.com", "pw")
        await ProfileService(backend, toaster).save_profile(user.id, "al")

    with pytest.raises(ValidationError):
        asyncio.run(scenario())
    assert backend.tables[PROFILES] == {}


def test_taken_username_fails_and_leaves_profile_unchanged(backend, toaster):
    async def scenario():
        service = ProfileService(backend, toaster)
        ada = await backend.sign_up("ada@example.com", "pw")
        await service.save_profile(ada.id, "scholar")
        bob = await backend.sign_up("bob@example.com", "pw")
        await service.save_profile(bob.id, "bobby", "Bob")
        with pytest.raises(UsernameTakenError) as exc:
            await service.save_profile(bob.id, "Scholar", "Bobert")
        return ada, bob, exc.value

    ada, bob, err = asyncio.run(scenario())
    assert isinstance(err, DuplicateError)
    assert err.code == "23505"
    assert err.username == "scholar"
    assert backend.tables[PROFILES][(bob.id,)]["username"] == "bobby"
    assert backend.tables[PROFILES][(bob.id,)]["full_name"] == "Bob"
    assert backend.tables[PROFILES][(ada.id,)]["username"] == "scholar"
    assert toaster.last.message == "Username is already taken!"


def test_other_failures_are_reported(backend, toaster):
    async def scenario():
        user = await backend.sign_up("ada@example.com", "pw")
        backend.fail("upsert", PROFILES, "JWT expired", "PGRST301")
        await ProfileService(backend, toaster).save_profile(user.id, "ada")

    with pytest.raises(BackendError) as exc:
        asyncio.run(scenario())
    assert not isinstance(exc.value, DuplicateError)
    assert toaster.last.message == "Update Error: JWT expired"
