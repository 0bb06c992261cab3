"""Authentication service: credential verification, password hashing, tokens."""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Protocol

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import select

from notesync.models.user import AccessToken, User
from notesync.services.datetime_service import format_iso, now_utc, parse_iso

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from notesync.config import Settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_PREFIX = "nsat_"
# bcrypt only looks at the first 72 bytes; longer secrets are rejected outright.
MAX_PASSWORD_BYTES = 72
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"notesync-dummy-password", bcrypt.gensalt()).decode("utf-8")


def _password_bytes(password: str) -> bytes | None:
    encoded = password.encode("utf-8")
    return encoded if len(encoded) <= MAX_PASSWORD_BYTES else None


def hash_password(password: str) -> str:
    """Hash a password with bcrypt. Raises ``ValueError`` past 72 bytes."""
    encoded = _password_bytes(password)
    if encoded is None:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    encoded = _password_bytes(plain_password)
    if encoded is None:
        return False
    return bcrypt.checkpw(encoded, hashed_password.encode("utf-8"))


async def authenticate_user(session: AsyncSession, username: str, password: str) -> User | None:
    """Return the user if the credentials are valid and the account may sign in.

    Unknown users, inactive or unverified accounts and wrong passwords all
    yield None; callers cannot tell which check failed.
    """
    user = await session.scalar(select(User).where(User.username == username))
    # Unknown users still pay for one bcrypt check so timing does not leak usernames.
    password_ok = verify_password(
        password, user.password_hash if user is not None else _DUMMY_PASSWORD_HASH
    )
    if user is None or not password_ok or not user.can_sign_in:
        return None
    return user


async def verify_credentials(session: AsyncSession, username: str, password: str) -> bool:
    """Check a username/password pair. Never raises for unknown users."""
    return await authenticate_user(session, username, password) is not None


class CredentialVerifier(Protocol):
    """One-way username/password check."""

    async def verify_credentials(self, username: str, password: str) -> bool: ...


class DatabaseCredentialVerifier:
    """Verifies credentials against user records in the database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def verify_credentials(self, username: str, password: str) -> bool:
        async with self._session_factory() as session:
            return await verify_credentials(session, username, password)


def create_jwt_access_token(
    data: dict[str, Any], secret_key: str, expires_minutes: int = 60
) -> str:
    """Create a short-lived signed access token."""
    claims = {**data, "type": "access", "exp": now_utc() + timedelta(minutes=expires_minutes)}
    return str(jwt.encode(claims, secret_key, algorithm=ALGORITHM))


def decode_jwt_access_token(token: str, secret_key: str) -> dict[str, Any] | None:
    """Return the claims of a valid, unexpired access token, else None."""
    try:
        claims: dict[str, Any] = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        logger.debug("Rejected signed token", exc_info=True)
        return None
    return claims if claims.get("type") == "access" else None


def issue_login_token(user: User, settings: Settings) -> str:
    """Create the signed token returned by a successful login."""
    claims = {"sub": str(user.id), "username": user.username, "is_admin": user.is_admin}
    return create_jwt_access_token(
        claims, settings.secret_key, settings.access_token_expire_minutes
    )


def hash_token(token: str) -> str:
    """SHA-256 digest of a token value; only digests are stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def create_access_token_value() -> str:
    return ACCESS_TOKEN_PREFIX + secrets.token_urlsafe(48)


async def create_access_token(
    session: AsyncSession,
    user_id: int,
    name: str,
    expires_days: int | None,
) -> tuple[AccessToken, str]:
    """Create and persist an access token. The plaintext is returned only here."""
    issued = now_utc()
    value = create_access_token_value()
    token = AccessToken(
        user_id=user_id,
        name=name,
        token_hash=hash_token(value),
        created_at=format_iso(issued),
        expires_at=None if expires_days is None else format_iso(issued + timedelta(expires_days)),
    )
    session.add(token)
    await session.commit()
    await session.refresh(token)
    logger.info("Issued access token %d (%s) for user %d", token.id, name, user_id)
    return token, value


async def list_access_tokens(session: AsyncSession, user_id: int) -> list[AccessToken]:
    """Active and revoked tokens of a user, newest first."""
    tokens = await session.scalars(
        select(AccessToken)
        .where(AccessToken.user_id == user_id)
        .order_by(AccessToken.created_at.desc())
    )
    return list(tokens)


async def revoke_access_token(session: AsyncSession, user_id: int, token_id: int) -> bool:
    """Revoke one of the user's tokens. Returns False if the user has no such token."""
    token = await session.scalar(
        select(AccessToken).where(AccessToken.id == token_id, AccessToken.user_id == user_id)
    )
    if token is None:
        return False
    token.revoked_at = token.revoked_at or format_iso(now_utc())
    await session.commit()
    logger.info("Revoked access token %d of user %d", token_id, user_id)
    return True


async def authenticate_access_token(session: AsyncSession, token_value: str) -> User | None:
    """Resolve a long-lived access token to its user.

    An expired token is revoked the first time it is presented.
    """
    token = await session.scalar(
        select(AccessToken).where(AccessToken.token_hash == hash_token(token_value))
    )
    if token is None or token.revoked_at is not None:
        return None

    now = now_utc()
    if token.expires_at is not None and parse_iso(token.expires_at) <= now:
        token.revoked_at = format_iso(now)
        await session.commit()
        return None

    user = await session.get(User, token.user_id)
    if user is None or not user.can_sign_in:
        return None

    token.last_used_at = format_iso(now)
    await session.commit()
    return user
