"""
Identity reconciliation: turning OpenID identities and passwords into accounts.

An OpenID login moves through ``TokenReceived -> ClaimsExtracted`` and then
ends in one of three states, decided by the account that owns the claimed
email address:

* ``AccountAbsent``: nobody uses the email yet. The caller collects a
  username and password and calls ``create_account``.
* ``Linked``: the owner has logged in with this provider before. A session
  is issued.
* ``Unlinked``: the owner never used this provider. Raises ``NotLinked`` so
  an unverified provider identity cannot take over a password account.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError

from quizhub.core.auth import hash_password, verify_password
from quizhub.core.errors import (
    EmailExists,
    EmailNotFound,
    IncorrectPassword,
    NotLinked,
    ProviderUnavailable,
    UsernameExists,
)
from quizhub.schemas.auth import normalize_username
from quizhub.schemas.common import AuthProvider
from quizhub.services.credentials import CredentialStore, normalize_email
from quizhub.services.openid import IdentityClaims, OpenIDClient, ProviderRegistry
from quizhub.services.tokens import TokenPair, TokenService

log = structlog.get_logger()


@dataclass(frozen=True)
class AccountAbsent:
    claims: IdentityClaims
    id_token: str

    @property
    def default_username(self) -> Optional[str]:
        """The provider's preferred username, if it would be a valid username here."""
        if not self.claims.preferred_username:
            return None
        try:
            return normalize_username(self.claims.preferred_username)
        except ValueError:
            return None


@dataclass(frozen=True)
class Linked:
    tokens: TokenPair


ReconciliationResult = Union[AccountAbsent, Linked]


class IdentityService:
    def __init__(self, providers: ProviderRegistry, tokens: TokenService):
        self.providers = providers
        self.tokens = tokens

    async def _client(self, provider: AuthProvider) -> OpenIDClient:
        client = await self.providers.get_provider(provider)
        if client is None:
            raise ProviderUnavailable()
        return client

    async def _ensure_available(self, store: CredentialStore, email: str, username: str) -> None:
        if await store.is_email_taken(email):
            raise EmailExists()
        if await store.is_username_taken(username):
            raise UsernameExists()

    @asynccontextmanager
    async def _creating_account(
        self, store: CredentialStore, email: str, username: str
    ) -> AsyncIterator[None]:
        """Commit the block, mapping a lost uniqueness race to the matching conflict."""
        try:
            async with store.transaction():
                yield
        except IntegrityError:
            log.info("user.register_conflict", username=username)
            await self._ensure_available(store, email, username)
            raise

    # ------------------------------------------------------------------
    # OpenID
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        store: CredentialStore,
        provider: AuthProvider,
        *,
        code: Optional[str] = None,
        id_token: Optional[str] = None,
    ) -> ReconciliationResult:
        """Resolve a provider login to a session or an account-creation prompt."""
        if (code is None) == (id_token is None):
            raise ValueError("Exactly one of code or id_token is required")

        client = await self._client(provider)
        if code is not None:
            id_token = await client.exchange_code(code)

        claims = client.decode_and_validate(id_token)

        user = await store.find_user_by_email(claims.email)
        if user is None:
            log.info("openid.account_absent", provider=provider.value)
            return AccountAbsent(claims=claims, id_token=id_token)

        if await store.find_link(user, provider) is None:
            log.info("openid.not_linked", provider=provider.value, user_id=user.id)
            raise NotLinked()

        tokens = await self.tokens.issue(store, user)
        log.info("auth.login_success", method=provider.value, user_id=user.id)
        return Linked(tokens=tokens)

    async def create_account(
        self,
        store: CredentialStore,
        provider: AuthProvider,
        id_token: str,
        username: str,
        password: str,
    ) -> TokenPair:
        """Create and link an account for a provider identity with no local account."""
        client = await self._client(provider)
        claims = client.decode_and_validate(id_token)

        await self._ensure_available(store, claims.email, username)
        password_hash = hash_password(password)

        async with self._creating_account(store, claims.email, username):
            user = await store.create_user(claims.email, username, password_hash)
            if claims.email_verified:
                user = await store.set_email_verified(user)
            await store.create_link(user, provider)

        log.info("user.registered", user_id=user.id, method=provider.value)
        return await self.tokens.issue(store, user)

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    async def register(
        self, store: CredentialStore, email: str, username: str, password: str
    ) -> TokenPair:
        email = normalize_email(email)
        await self._ensure_available(store, email, username)

        password_hash = hash_password(password)
        async with self._creating_account(store, email, username):
            user = await store.create_user(email, username, password_hash)
        log.info("user.registered", user_id=user.id, method="password")
        return await self.tokens.issue(store, user)

    async def login(self, store: CredentialStore, email: str, password: str) -> TokenPair:
        user = await store.find_user_by_email(email)
        if user is None:
            raise EmailNotFound()

        if not verify_password(password, user.password_hash):
            log.warning("auth.login_failure", user_id=user.id, reason="bad_password")
            raise IncorrectPassword()

        tokens = await self.tokens.issue(store, user)
        log.info("auth.login_success", method="password", user_id=user.id)
        return tokens
