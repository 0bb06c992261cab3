"""Account lifecycle: creation, activation, password changes, removal."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from notesync.exceptions import UnknownUser
from notesync.models.note import Note
from notesync.models.sync import SyncManifest
from notesync.models.user import User
from notesync.services.auth_service import hash_password, verify_password
from notesync.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from notesync.config import Settings

logger = logging.getLogger(__name__)


async def get_user(session: AsyncSession, username: str) -> User:
    """Return the user or raise ``UnknownUser``."""
    result = await session.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is None:
        raise UnknownUser(username)
    return user


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.username))
    return list(result.scalars().all())


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    is_activated: bool = False,
    is_verified: bool = False,
    is_admin: bool = False,
) -> User:
    """Register a new account. Raises ``ValueError`` if the username is taken."""
    existing = await session.execute(select(User.id).where(User.username == username))
    if existing.scalar_one_or_none() is not None:
        raise ValueError(f"Username already exists: {username}")

    now = format_iso(now_utc())
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        is_activated=is_activated,
        is_verified=is_verified,
        is_admin=is_admin,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info("Created user %s", username)
    return user


async def update_user_flags(
    session: AsyncSession,
    username: str,
    *,
    is_activated: bool | None = None,
    is_verified: bool | None = None,
    is_admin: bool | None = None,
) -> User:
    """Change account flags; None leaves a flag unchanged."""
    user = await get_user(session, username)
    if is_activated is not None:
        user.is_activated = is_activated
    if is_verified is not None:
        user.is_verified = is_verified
    if is_admin is not None:
        user.is_admin = is_admin
    user.updated_at = format_iso(now_utc())
    await session.commit()
    return user


async def change_password(
    session: AsyncSession, user: User, current_password: str, new_password: str
) -> None:
    """Replace a user's password after checking the current one."""
    if not verify_password(current_password, user.password_hash):
        raise ValueError("Current password is incorrect")
    user.password_hash = hash_password(new_password)
    user.updated_at = format_iso(now_utc())
    await session.commit()


async def delete_user(session: AsyncSession, username: str) -> None:
    """Remove an account together with its notes, tokens and manifest."""
    user = await get_user(session, username)
    await session.delete(user)
    await session.commit()
    logger.info("Deleted user %s", username)


async def reset_note_collection(session: AsyncSession, username: str) -> str:
    """Drop all of a user's notes and start a new collection instance.

    The new server id forces every client to resync from scratch; the old
    id is never handed out again.
    """
    user = await get_user(session, username)
    await session.execute(delete(Note).where(Note.user_id == user.id))
    result = await session.execute(select(SyncManifest).where(SyncManifest.user_id == user.id))
    manifest = result.scalar_one_or_none()
    now = format_iso(now_utc())
    server_id = str(uuid.uuid4())
    if manifest is None:
        session.add(
            SyncManifest(user_id=user.id, server_id=server_id, current_revision=0, updated_at=now)
        )
    else:
        manifest.server_id = server_id
        manifest.current_revision = 0
        manifest.updated_at = now
    user.updated_at = now
    await session.commit()
    logger.info("Reset note collection of %s (new server id %s)", username, server_id)
    return server_id


async def ensure_admin_user(session: AsyncSession, settings: Settings) -> None:
    """Bootstrap the configured admin account unless it already exists."""
    existing = await session.scalar(select(User.id).where(User.username == settings.admin_username))
    if existing is not None:
        return
    await create_user(
        session,
        username=settings.admin_username,
        email=f"{settings.admin_username}@localhost",
        password=settings.admin_password,
        is_activated=True,
        is_verified=True,
        is_admin=True,
    )
