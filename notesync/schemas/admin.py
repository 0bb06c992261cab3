"""Admin schemas."""

from __future__ import annotations

from pydantic import BaseModel, EmailStr, Field


class UserCreate(BaseModel):
    """Request to create an account."""

    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    is_activated: bool = True
    is_verified: bool = True
    is_admin: bool = False


class UserUpdate(BaseModel):
    """Partial update of account flags."""

    is_activated: bool | None = None
    is_verified: bool | None = None
    is_admin: bool | None = None


class CollectionResetResponse(BaseModel):
    """Server id of the fresh note collection."""

    username: str
    server_id: str
