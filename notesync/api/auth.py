"""Authentication API endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.api.deps import get_backend, get_session, get_settings, require_auth
from notesync.config import Settings
from notesync.exceptions import UnknownUser
from notesync.models.user import AccessToken, User
from notesync.schemas.auth import (
    AccessTokenCreateRequest,
    AccessTokenCreateResponse,
    AccessTokenResponse,
    LoginRequest,
    PasswordChange,
    TokenResponse,
    UserResponse,
)
from notesync.services.auth_service import (
    create_access_token,
    issue_login_token,
    list_access_tokens,
    revoke_access_token,
)
from notesync.services.repository import DataBackend
from notesync.services.user_service import change_password, get_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _token_response(token: AccessToken) -> AccessTokenResponse:
    return AccessTokenResponse(
        id=token.id,
        name=token.name,
        created_at=token.created_at,
        expires_at=token.expires_at,
        last_used_at=token.last_used_at,
        revoked_at=token.revoked_at,
    )


def user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        is_activated=user.is_activated,
        is_verified=user.is_verified,
        is_admin=user.is_admin,
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    backend: Annotated[DataBackend, Depends(get_backend)],
) -> TokenResponse:
    """Exchange username and password for a short-lived access token."""
    denied = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Access denied",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not await backend.credentials.verify_credentials(body.username, body.password):
        logger.info("Failed login attempt")
        raise denied
    try:
        user = await get_user(session, body.username)
    except UnknownUser as exc:
        # Deleted between the credential check and the lookup.
        raise denied from exc
    return TokenResponse(
        access_token=issue_login_token(user, settings),
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.get("/me", response_model=UserResponse)
async def me(user: Annotated[User, Depends(require_auth)]) -> UserResponse:
    """Return the authenticated user."""
    return user_response(user)


@router.put("/password")
async def update_password(
    body: PasswordChange,
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_auth)],
) -> dict[str, str]:
    """Change the authenticated user's password."""
    if body.new_password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    try:
        await change_password(session, user, body.current_password, body.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@router.post("/tokens", response_model=AccessTokenCreateResponse, status_code=201)
async def create_token(
    body: AccessTokenCreateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    user: Annotated[User, Depends(require_auth)],
) -> AccessTokenCreateResponse:
    """Issue a long-lived access token for a sync client."""
    expires_days = body.expires_days or settings.access_token_default_days
    token, value = await create_access_token(session, user.id, body.name, expires_days)
    return AccessTokenCreateResponse(**_token_response(token).model_dump(), token=value)


@router.get("/tokens", response_model=list[AccessTokenResponse])
async def list_tokens(
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_auth)],
) -> list[AccessTokenResponse]:
    """List the authenticated user's access tokens."""
    tokens = await list_access_tokens(session, user.id)
    return [_token_response(token) for token in tokens]


@router.delete("/tokens/{token_id}", status_code=204)
async def revoke_token(
    token_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_auth)],
) -> None:
    """Revoke one of the authenticated user's access tokens."""
    if not await revoke_access_token(session, user.id, token_id):
        raise HTTPException(status_code=404, detail="Token not found")
