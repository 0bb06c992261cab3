"""Tests for account management."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import func, select

from notesync.exceptions import UnknownUser
from notesync.models.note import Note
from notesync.models.sync import SyncManifest
from notesync.models.user import AccessToken
from notesync.services.auth_service import create_access_token, verify_credentials
from notesync.services.repository import DatabaseBackend
from notesync.services.sync_service import ClientManifest, NoteChange
from notesync.services.user_service import (
    change_password,
    create_user,
    delete_user,
    ensure_admin_user,
    get_user,
    list_users,
    update_user_flags,
)
from tests.conftest import TEST_PASSWORD

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from notesync.config import Settings
    from notesync.models.user import User


async def _count(session: AsyncSession, model: type) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return int(result.scalar_one())


class TestCreateUser:
    async def test_new_accounts_cannot_sign_in_until_approved(
        self, db_session: AsyncSession
    ) -> None:
        await create_user(
            db_session, username="carol", email="carol@test.local", password="long-password"
        )
        assert await verify_credentials(db_session, "carol", "long-password") is False

        await update_user_flags(db_session, "carol", is_activated=True, is_verified=True)
        assert await verify_credentials(db_session, "carol", "long-password") is True

    async def test_duplicate_username(
        self, db_session: AsyncSession, user_factory: Callable[..., Awaitable[User]]
    ) -> None:
        await user_factory("alice")
        with pytest.raises(ValueError, match="already exists"):
            await create_user(
                db_session, username="alice", email="other@test.local", password="long-password"
            )

    async def test_list_users_sorted(
        self, db_session: AsyncSession, user_factory: Callable[..., Awaitable[User]]
    ) -> None:
        await user_factory("zed")
        await user_factory("amy")
        assert [user.username for user in await list_users(db_session)] == ["amy", "zed"]


class TestUpdateUser:
    async def test_none_leaves_flags_unchanged(
        self, db_session: AsyncSession, user_factory: Callable[..., Awaitable[User]]
    ) -> None:
        await user_factory("alice")
        user = await update_user_flags(db_session, "alice", is_admin=True)
        assert user.is_admin is True
        assert user.is_activated is True
        assert user.is_verified is True

    async def test_unknown_user(self, db_session: AsyncSession) -> None:
        with pytest.raises(UnknownUser):
            await update_user_flags(db_session, "nobody", is_admin=True)

    async def test_change_password(
        self, db_session: AsyncSession, user_factory: Callable[..., Awaitable[User]]
    ) -> None:
        await user_factory("alice")
        user = await get_user(db_session, "alice")
        await change_password(db_session, user, TEST_PASSWORD, "brand-new-password")
        assert await verify_credentials(db_session, "alice", "brand-new-password") is True
        assert await verify_credentials(db_session, "alice", TEST_PASSWORD) is False

    async def test_change_password_requires_current(
        self, db_session: AsyncSession, user_factory: Callable[..., Awaitable[User]]
    ) -> None:
        await user_factory("alice")
        user = await get_user(db_session, "alice")
        with pytest.raises(ValueError, match="incorrect"):
            await change_password(db_session, user, "wrong-password", "brand-new-password")


class TestDeleteUser:
    async def test_delete_cascades(
        self,
        db_session: AsyncSession,
        backend: DatabaseBackend,
        user_factory: Callable[..., Awaitable[User]],
    ) -> None:
        from datetime import UTC, datetime

        alice = await user_factory("alice")
        change = NoteChange(
            guid="n1",
            title="t",
            body="b",
            base_revision=0,
            client_timestamp=datetime(2024, 1, 1, tzinfo=UTC),
        )
        await backend.sync("alice", ClientManifest(server_id=None), [change])
        await create_access_token(db_session, alice.id, "phone", None)

        await delete_user(db_session, "alice")

        assert await _count(db_session, Note) == 0
        assert await _count(db_session, SyncManifest) == 0
        assert await _count(db_session, AccessToken) == 0
        with pytest.raises(UnknownUser):
            await get_user(db_session, "alice")


class TestEnsureAdminUser:
    async def test_creates_admin_once(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await ensure_admin_user(db_session, test_settings)
        await ensure_admin_user(db_session, test_settings)

        admins = [user for user in await list_users(db_session) if user.is_admin]
        assert [admin.username for admin in admins] == [test_settings.admin_username]
        assert admins[0].can_sign_in
        assert await verify_credentials(
            db_session, test_settings.admin_username, test_settings.admin_password
        )

    async def test_existing_account_is_left_alone(
        self,
        db_session: AsyncSession,
        test_settings: Settings,
        user_factory: Callable[..., Awaitable[User]],
    ) -> None:
        await user_factory(test_settings.admin_username)
        await ensure_admin_user(db_session, test_settings)
        user = await get_user(db_session, test_settings.admin_username)
        assert user.is_admin is False
        assert await verify_credentials(db_session, user.username, TEST_PASSWORD)
