"""
Session token lifecycle: issue, verify and refresh.

Access tokens are short lived HS256 JWTs carrying the user id. Refresh tokens
are opaque random strings, one per user, replaced on every issue.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog

from quizhub.core.config import Settings
from quizhub.core.errors import CreateToken, InvalidRefreshToken, InvalidToken
from quizhub.models.user import User
from quizhub.services.credentials import CredentialStore

log = structlog.get_logger()

REFRESH_TOKEN_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class TokenPair:
    token: str
    refresh_token: str
    # UTC unix timestamp at which ``token`` expires
    expiry: int


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    exp: int


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenService:
    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        access_token_ttl: timedelta = timedelta(minutes=30),
        refresh_token_ttl: Optional[timedelta] = timedelta(days=30),
        refresh_token_length: int = 128,
    ):
        if not secret_key:
            raise ValueError("A signing key is required to issue session tokens")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.refresh_token_length = refresh_token_length

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        refresh_ttl = (
            timedelta(days=settings.refresh_token_expire_days)
            if settings.refresh_token_expire_days > 0
            else None
        )
        return cls(
            settings.api_jwt_token_key,
            algorithm=settings.jwt_algorithm,
            access_token_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_token_ttl=refresh_ttl,
            refresh_token_length=settings.refresh_token_length,
        )

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_access_token(
        self, user_id: int, *, expires_delta: Optional[timedelta] = None
    ) -> tuple[str, int]:
        """Sign an access token for ``user_id``. Returns (token, expiry)."""
        expiry = int(
            (datetime.now(timezone.utc) + (expires_delta or self.access_token_ttl)).timestamp()
        )
        payload = {"sub": str(user_id), "exp": expiry}
        try:
            token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        except (jwt.PyJWTError, NotImplementedError, TypeError, ValueError) as exc:
            log.error("token.create_failed", user_id=user_id, error=str(exc))
            raise CreateToken() from exc
        return token, expiry

    def verify(self, token: str) -> AccessClaims:
        """Decode and validate an access token.

        Bad signatures, expired tokens and malformed payloads are all
        reported as the same ``InvalidToken``.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp"]},
            )
            return AccessClaims(user_id=int(payload["sub"]), exp=int(payload["exp"]))
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise InvalidToken() from exc

    # ------------------------------------------------------------------
    # Token pairs
    # ------------------------------------------------------------------

    async def issue(self, store: CredentialStore, user: User) -> TokenPair:
        """Issue a fresh access token and rotate the user's refresh token."""
        token, expiry = self.create_access_token(user.id)
        refresh_token = await self.rotate_refresh_token(store, user)
        log.info("token.issued", user_id=user.id, expiry=expiry)
        return TokenPair(token=token, refresh_token=refresh_token, expiry=expiry)

    async def rotate_refresh_token(self, store: CredentialStore, user: User) -> str:
        """Replace the user's refresh token with a new unique value."""
        while True:
            value = self.generate_refresh_token()
            if await store.find_refresh_token(value) is None:
                break
            log.warning("token.refresh_collision", user_id=user.id)

        await store.upsert_refresh_token(user, value)
        return value

    def generate_refresh_token(self) -> str:
        return "".join(
            secrets.choice(REFRESH_TOKEN_ALPHABET)
            for _ in range(self.refresh_token_length)
        )

    async def refresh(self, store: CredentialStore, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new token pair.

        The presented refresh token stops working as soon as this succeeds.
        """
        record = await store.find_refresh_token(refresh_token)
        if record is None:
            raise InvalidRefreshToken()

        if self.refresh_token_ttl is not None:
            if _as_utc(record.created_at) + self.refresh_token_ttl <= datetime.now(timezone.utc):
                log.info("token.refresh_expired", user_id=record.user_id)
                raise InvalidRefreshToken()

        user = await store.find_user_by_id(record.user_id)
        if user is None:
            raise InvalidRefreshToken()

        return await self.issue(store, user)
