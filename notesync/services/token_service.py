"""Token handler: maps a bearer token to the username it was issued for."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from notesync.exceptions import AuthenticationFailure
from notesync.models.user import User
from notesync.services.auth_service import (
    ACCESS_TOKEN_PREFIX,
    authenticate_access_token,
    decode_jwt_access_token,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class TokenHandler(Protocol):
    """Resolves request credentials to a principal."""

    async def resolve_username(self, token: str) -> str: ...


async def resolve_user(session: AsyncSession, token: str, secret_key: str) -> User:
    """Resolve a signed login token or a stored access token to an active user.

    Raises ``AuthenticationFailure`` for anything that does not check out.
    """
    if token.startswith(ACCESS_TOKEN_PREFIX):
        user = await authenticate_access_token(session, token)
        if user is None:
            raise AuthenticationFailure()
        return user

    payload = decode_jwt_access_token(token, secret_key)
    if payload is None:
        raise AuthenticationFailure()
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id.isdigit():
        raise AuthenticationFailure()
    user = await session.get(User, int(user_id))
    if user is None or not user.can_sign_in:
        logger.debug("Signed token for missing or disabled user %s", user_id)
        raise AuthenticationFailure()
    return user


class DatabaseTokenHandler:
    """Token handler backed by the access token table and the signing key."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], secret_key: str) -> None:
        self._session_factory = session_factory
        self._secret_key = secret_key

    async def resolve_username(self, token: str) -> str:
        async with self._session_factory() as session:
            user = await resolve_user(session, token, self._secret_key)
            return user.username
