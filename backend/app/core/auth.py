from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import get_db
from backend.app.core.exceptions import Unauthorized
from backend.app.models.user import User

logger = logging.getLogger(__name__)

# Use pbkdf2_sha256 instead of bcrypt to avoid 72-byte limit and passlib initialization issues
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

API_KEY_PREFIX_LENGTH = 12


def verify_api_key_hash(plain_key: str, hashed_key: str) -> bool:
    """Verify an API key against its stored hash."""
    return pwd_context.verify(plain_key, hashed_key)


def get_api_key_hash(plain_key: str) -> str:
    """Hash an API key for storage."""
    return pwd_context.hash(plain_key)


def generate_api_key() -> tuple[str, str, str]:
    """Generate a new API key.

    Returns:
        tuple: (full_key, key_hash, key_prefix)
            - full_key: The complete API key (only shown once on creation)
            - key_hash: Hashed version for storage and verification
            - key_prefix: Leading characters, stored in clear to narrow lookups
    """
    full_key = f"pb_{secrets.token_urlsafe(32)}"
    key_hash = get_api_key_hash(full_key)
    key_prefix = full_key[:API_KEY_PREFIX_LENGTH]
    return full_key, key_hash, key_prefix


def mask_api_key(api_key: str | None) -> str:
    """Render a key safely for logs."""
    if not api_key:
        return "<none>"
    return api_key[:8] + "..."


def extract_api_key(authorization: str | None, x_api_key: str | None) -> str | None:
    """Pull the credential out of 'X-API-Key' or 'Authorization: Bearer <key>'."""
    if x_api_key:
        return x_api_key.strip() or None
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


async def get_user_by_api_key(db: AsyncSession, api_key: str) -> User:
    """Resolve an API key to an active user.

    Raises:
        Unauthorized: the key matches no user, or the user is disabled.
    """
    if not api_key or len(api_key) < API_KEY_PREFIX_LENGTH:
        raise Unauthorized("No user found for the provided API key")

    result = await db.execute(select(User).where(User.api_key_prefix == api_key[:API_KEY_PREFIX_LENGTH]))
    for user in result.scalars().all():
        if verify_api_key_hash(api_key, user.api_key_hash):
            if not user.is_active:
                logger.info("Rejected API key %s: user %s is inactive", mask_api_key(api_key), user.username)
                raise Unauthorized("User account is disabled")
            return user
    raise Unauthorized("No user found for the provided API key")


class ApiKeyResolver:
    """Credential -> identity lookup used by the push channel.

    The channel has no request-scoped session, so the resolver opens its own
    session from the factory it was built with.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def __call__(self, api_key: str) -> User:
        async with self._session_factory() as db:
            return await get_user_by_api_key(db, api_key)


async def get_current_user(
    authorization: Annotated[str | None, Header(alias="Authorization")] = None,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get the user owning the API key presented in the request headers.

    Checks both 'Authorization: Bearer <key>' and 'X-API-Key: <key>' headers.
    """
    api_key_value = extract_api_key(authorization, x_api_key)
    if not api_key_value:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide 'X-API-Key' header or 'Authorization: Bearer <key>'",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await get_user_by_api_key(db, api_key_value)
    except Unauthorized as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def require_admin(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    """Dependency that only lets administrators through."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user


CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_admin)]
