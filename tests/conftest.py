"""Shared test fixtures for NoteSync."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from notesync.config import Settings
from notesync.database import create_engine
from notesync.main import create_app, init_storage
from notesync.models.base import Base
from notesync.models.user import User
from notesync.services.auth_service import hash_password
from notesync.services.datetime_service import format_iso, now_utc
from notesync.services.repository import DatabaseBackend, UserLockRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
TEST_PASSWORD = "correct-horse"
ADMIN_PASSWORD = "admin-password-123"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        admin_username="admin",
        admin_password=ADMIN_PASSWORD,
        storage_timeout_seconds=5.0,
        sync_max_retries=2,
    )


@pytest.fixture
async def engine_and_factory(
    test_settings: Settings,
) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]]]:
    """Create a test database engine with the schema in place."""
    engine, session_factory = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine, session_factory
    await engine.dispose()


@pytest.fixture
def db_engine(
    engine_and_factory: tuple[AsyncEngine, async_sessionmaker[AsyncSession]],
) -> AsyncEngine:
    return engine_and_factory[0]


@pytest.fixture
def session_factory(
    engine_and_factory: tuple[AsyncEngine, async_sessionmaker[AsyncSession]],
) -> async_sessionmaker[AsyncSession]:
    return engine_and_factory[1]


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def user_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[User]]:
    """Insert users directly into the database."""

    async def _create(
        username: str = "alice",
        password: str = TEST_PASSWORD,
        *,
        is_activated: bool = True,
        is_verified: bool = True,
        is_admin: bool = False,
    ) -> User:
        now = format_iso(now_utc())
        user = User(
            username=username,
            email=f"{username}@test.local",
            password_hash=hash_password(password),
            is_activated=is_activated,
            is_verified=is_verified,
            is_admin=is_admin,
            created_at=now,
            updated_at=now,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    return _create


@pytest.fixture
def backend(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> DatabaseBackend:
    return DatabaseBackend(session_factory, test_settings, UserLockRegistry())


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Storage is initialized by hand because ASGITransport does not run the
    application lifespan.
    """
    app = create_app(settings)
    engine = await init_storage(app, settings)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await engine.dispose()


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings) as ac:
        yield ac
