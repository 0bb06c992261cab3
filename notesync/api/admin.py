"""Admin API endpoints: account management."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from notesync.api.auth import user_response
from notesync.api.deps import get_backend, get_session, require_admin
from notesync.models.user import User
from notesync.schemas.admin import CollectionResetResponse, UserCreate, UserUpdate
from notesync.schemas.auth import UserResponse
from notesync.services.repository import DataBackend
from notesync.services.user_service import (
    create_user,
    delete_user,
    list_users,
    update_user_flags,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/users", response_model=list[UserResponse])
async def get_users(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> list[UserResponse]:
    """List all accounts."""
    return [user_response(user) for user in await list_users(session)]


@router.post("/users", response_model=UserResponse, status_code=201)
async def add_user(
    body: UserCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> UserResponse:
    """Create an account."""
    try:
        user = await create_user(
            session,
            username=body.username,
            email=body.email,
            password=body.password,
            is_activated=body.is_activated,
            is_verified=body.is_verified,
            is_admin=body.is_admin,
        )
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return user_response(user)


@router.patch("/users/{username}", response_model=UserResponse)
async def patch_user(
    username: str,
    body: UserUpdate,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> UserResponse:
    """Activate, verify, or change the role of an account."""
    user = await update_user_flags(
        session,
        username,
        is_activated=body.is_activated,
        is_verified=body.is_verified,
        is_admin=body.is_admin,
    )
    return user_response(user)


@router.delete("/users/{username}", status_code=204)
async def remove_user(
    username: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    admin: Annotated[User, Depends(require_admin)],
) -> None:
    """Delete an account with all of its notes and tokens."""
    if username == admin.username:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    await delete_user(session, username)


@router.post("/users/{username}/reset", response_model=CollectionResetResponse)
async def reset_collection(
    username: str,
    backend: Annotated[DataBackend, Depends(get_backend)],
    _user: Annotated[User, Depends(require_admin)],
) -> CollectionResetResponse:
    """Wipe an account's notes and start a new collection instance."""
    server_id = await backend.reset_collection(username)
    return CollectionResetResponse(username=username, server_id=server_id)
