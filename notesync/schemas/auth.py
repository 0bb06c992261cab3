"""Authentication schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

# bcrypt ignores everything past 72 bytes, so longer passwords are refused up front.
_PASSWORD_MAX = 72


class LoginRequest(BaseModel):
    """Login request."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class TokenResponse(BaseModel):
    """Signed access token response."""

    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


class PasswordChange(BaseModel):
    """Password change request."""

    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=8, max_length=_PASSWORD_MAX)
    confirm_password: str = Field(min_length=8, max_length=_PASSWORD_MAX)


class AccessTokenCreateRequest(BaseModel):
    """Request to issue a long-lived access token for a sync client."""

    name: str = Field(min_length=1, max_length=100)
    expires_days: int | None = Field(default=None, ge=1, le=3650)


class AccessTokenResponse(BaseModel):
    """Access token metadata."""

    id: int
    name: str
    created_at: str
    expires_at: str | None = None
    last_used_at: str | None = None
    revoked_at: str | None = None


class AccessTokenCreateResponse(AccessTokenResponse):
    """Created token metadata including the one-time plaintext token."""

    token: str


class UserResponse(BaseModel):
    """User info response."""

    id: int
    username: str
    email: str
    is_activated: bool
    is_verified: bool
    is_admin: bool = False
