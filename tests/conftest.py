"""
Shared fixtures: an isolated SQLite database per test and an in-process
OpenID provider that signs real RS256 identity tokens.
"""

from __future__ import annotations

import os

# Settings are read at import time, so configure the environment first.
os.environ.setdefault("API_JWT_TOKEN_KEY", "test-signing-key-with-enough-bytes-for-hs256")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "warning")

import json
import time
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from jwt.algorithms import RSAAlgorithm

from quizhub.core.cache import AsyncTTLCache
from quizhub.core.config import OpenIDProviderSettings, get_settings
from quizhub.core.database import build_engine, get_session, init_db, make_session_factory
from quizhub.main import create_app
from quizhub.schemas.common import AuthProvider
from quizhub.services.credentials import CredentialStore
from quizhub.services.identity import IdentityService
from quizhub.services.openid import DISCOVERY_PATH, OpenIDClient, ProviderRegistry
from quizhub.services.tokens import TokenService

REDIRECT_URL = "http://localhost:5173/auth/callback"


def generate_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeIdentityProvider:
    """Answers discovery, JWKS and token requests through ``httpx.MockTransport``."""

    issuer = "https://accounts.example.test"
    client_id = "quizhub-test-client"
    client_secret = "quizhub-test-secret"
    kid = "test-key-1"

    def __init__(self):
        self.private_key = generate_rsa_key()
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update(kid=self.kid, alg="RS256", use="sig")
        self.jwks = {"keys": [jwk]}
        self.metadata = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "jwks_uri": f"{self.issuer}/jwks",
        }
        # authorization code -> id_token handed out by the token endpoint
        self.codes: dict[str, str] = {}
        self.requests: list[httpx.Request] = []

    def mint(
        self,
        email: Optional[str] = "player@example.com",
        *,
        subject: str = "subject-1",
        signing_key: Any = None,
        **claims: Any,
    ) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.client_id,
            "sub": subject,
            "iat": now,
            "exp": now + 300,
        }
        if email is not None:
            payload["email"] = email
        payload.update(claims)
        return jwt.encode(
            payload,
            signing_key or self.private_key,
            algorithm="RS256",
            headers={"kid": self.kid},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == self.issuer + DISCOVERY_PATH:
            return httpx.Response(200, json=self.metadata)
        if url == self.metadata["jwks_uri"]:
            return httpx.Response(200, json=self.jwks)
        if url == self.metadata["token_endpoint"]:
            form = parse_qs(request.content.decode())
            code = form.get("code", [""])[0]
            if code in self.codes:
                return httpx.Response(
                    200,
                    json={
                        "access_token": "provider-access-token",
                        "token_type": "Bearer",
                        "expires_in": 3600,
                        "id_token": self.codes[code],
                    },
                )
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def settings(self) -> OpenIDProviderSettings:
        return OpenIDProviderSettings(
            issuer=self.issuer,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )

    async def discover(
        self, provider: AuthProvider, config: OpenIDProviderSettings, redirect_url: str
    ) -> OpenIDClient:
        return await OpenIDClient.discover(
            provider, config, redirect_url, transport=self.transport
        )

    def client(self, provider: AuthProvider = AuthProvider.GOOGLE) -> OpenIDClient:
        return OpenIDClient(
            provider,
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_url=REDIRECT_URL,
            metadata=self.metadata,
            jwks=self.jwks,
            transport=self.transport,
        )


@pytest.fixture(scope="session")
def rsa_key():
    """A second key, for tokens the provider did not sign."""
    return generate_rsa_key()


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def provider_registry(identity_provider: FakeIdentityProvider) -> ProviderRegistry:
    """Google is configured and reachable; Microsoft is not configured."""
    return ProviderRegistry(
        {
            AuthProvider.GOOGLE: identity_provider.settings(),
            AuthProvider.MICROSOFT: None,
        },
        REDIRECT_URL,
        cache=AsyncTTLCache(60),
        discover=identity_provider.discover,
    )


@pytest.fixture
def token_service() -> TokenService:
    return TokenService.from_settings(get_settings())


@pytest.fixture
def identity_service(provider_registry, token_service) -> IdentityService:
    return IdentityService(provider_registry, token_service)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'quizhub.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def store(session_factory):
    async with session_factory() as session:
        yield CredentialStore(session)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def app(provider_registry, session_factory):
    app = create_app(get_settings(), provider_registry=provider_registry)

    async def override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_session
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
