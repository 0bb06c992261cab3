"""Shared API dependencies: DB session, backend, auth."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.config import Settings
from notesync.exceptions import AuthenticationFailure
from notesync.models.user import User
from notesync.services.repository import DataBackend
from notesync.services.token_service import resolve_user

security = HTTPBearer(auto_error=False)


def _access_denied() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Access denied",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_backend(request: Request) -> DataBackend:
    """Get the storage backend from app state."""
    backend: DataBackend = request.app.state.backend
    return backend


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    session: AsyncSession = Depends(get_session),
) -> User | None:
    """Get current authenticated user, or None if not authenticated."""
    if credentials is None:
        return None
    settings: Settings = request.app.state.settings
    try:
        return await resolve_user(session, credentials.credentials, settings.secret_key)
    except AuthenticationFailure:
        return None


async def require_auth(
    user: Annotated[User | None, Depends(get_current_user)],
) -> User:
    """Require authentication. Raises 401 if not authenticated."""
    if user is None:
        raise _access_denied()
    return user


async def require_admin(
    user: Annotated[User, Depends(require_auth)],
) -> User:
    """Require admin role. Raises 403 if not admin."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def require_username(
    backend: Annotated[DataBackend, Depends(get_backend)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> str:
    """Resolve the bearer token to a username through the backend's token handler."""
    if credentials is None:
        raise _access_denied()
    try:
        return await backend.tokens.resolve_username(credentials.credentials)
    except AuthenticationFailure as exc:
        raise _access_denied() from exc
