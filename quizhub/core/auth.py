"""
Authentication helpers for Quiz Hub.

Supports:
- Password hashing (bcrypt)
- Bearer session-token authentication dependencies
"""

from __future__ import annotations

from typing import Optional

import bcrypt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from quizhub.core.config import get_settings
from quizhub.core.database import get_session
from quizhub.core.errors import InvalidToken
from quizhub.models.user import User
from quizhub.services.credentials import CredentialStore
from quizhub.services.tokens import AccessClaims, TokenService

log = structlog.get_logger()
settings = get_settings()

bearer_scheme = HTTPBearer(auto_error=False)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with the configured cost factor."""
    return bcrypt.hashpw(
        password.encode(), bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    ).decode()


def verify_password(password: str, hashed: Optional[str]) -> bool:
    """Verify a password against a bcrypt hash. Accounts without a hash never match."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        log.warning("auth.malformed_password_hash")
        return False


# ---------------------------------------------------------------------------
# Request-scoped collaborators
# ---------------------------------------------------------------------------

def get_token_service(request: Request) -> TokenService:
    """The process-wide token service created by the app factory."""
    return request.app.state.token_service


async def get_credential_store(
    session: AsyncSession = Depends(get_session),
) -> CredentialStore:
    return CredentialStore(session)


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

async def require_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenService = Depends(get_token_service),
) -> AccessClaims:
    """Gate a route on a valid session token without loading the user."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise InvalidToken()
    return tokens.verify(credentials.credentials)


async def get_current_user(
    claims: AccessClaims = Depends(require_token),
    store: CredentialStore = Depends(get_credential_store),
) -> User:
    """Resolve the user behind a valid session token."""
    user = await store.find_user_by_id(claims.user_id)
    if user is None:
        # Token outlived its user
        raise InvalidToken()
    return user
