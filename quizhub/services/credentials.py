"""
Credential store: persistence of users, provider links and refresh tokens.

A thin adapter over an ``AsyncSession``. Writes are flushed but not
committed; the request session (or ``transaction()``) owns the commit.
Storage errors propagate unchanged.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from quizhub.models.refresh_token import UserRefreshToken
from quizhub.models.user import User
from quizhub.models.user_link import UserLink
from quizhub.schemas.common import AuthProvider

log = structlog.get_logger()

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["CredentialStore"]:
        """Commit everything written inside the block, or nothing at all."""
        try:
            yield self
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    # --- Users ---

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def find_user_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def is_email_taken(self, email: str) -> bool:
        return await self.find_user_by_email(email) is not None

    async def is_username_taken(self, username: str) -> bool:
        result = await self.session.execute(
            select(User.id).where(User.username == username)
        )
        return result.first() is not None

    async def create_user(
        self, email: str, username: str, password_hash: Optional[str]
    ) -> User:
        user = User(
            email=normalize_email(email),
            username=username,
            password_hash=password_hash,
        )
        self.session.add(user)
        await self.session.flush()
        log.info("user.created", user_id=user.id)
        return user

    async def set_email_verified(self, user: User) -> User:
        user.email_verified_at = datetime.now(timezone.utc)
        self.session.add(user)
        await self.session.flush()
        return user

    # --- Provider links ---

    async def find_link(self, user: User, provider: AuthProvider) -> Optional[UserLink]:
        result = await self.session.execute(
            select(UserLink).where(
                UserLink.user_id == user.id, UserLink.provider == provider
            )
        )
        return result.scalar_one_or_none()

    async def create_link(self, user: User, provider: AuthProvider) -> UserLink:
        link = UserLink(user_id=user.id, provider=provider)
        self.session.add(link)
        await self.session.flush()
        log.info("user.linked", user_id=user.id, provider=provider.value)
        return link

    # --- Refresh tokens ---

    async def find_refresh_token(self, value: str) -> Optional[UserRefreshToken]:
        result = await self.session.execute(
            select(UserRefreshToken)
            .where(UserRefreshToken.refresh_token == value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_refresh_token(self, user: User, value: str) -> None:
        """Store ``value`` as the user's only refresh token.

        Relies on the unique ``user_id`` constraint: an existing row for the
        user has its token and ``created_at`` overwritten in place.
        """
        dialect = self.session.bind.dialect.name
        try:
            insert = _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise NotImplementedError(f"Refresh token upsert not supported on {dialect}")

        now = datetime.now(timezone.utc)
        stmt = insert(UserRefreshToken.__table__).values(
            refresh_token=value, user_id=user.id, created_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserRefreshToken.__table__.c.user_id],
            set_={
                "refresh_token": stmt.excluded.refresh_token,
                "created_at": stmt.excluded.created_at,
            },
        )
        await self.session.execute(stmt)
