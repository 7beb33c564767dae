"""
Tests for OpenID provider clients and the provider registry.

Covers:
- Discovery of metadata and signing keys
- Identity token validation (signature, issuer, audience, claims)
- Authorization code exchange
- Registry caching and unavailability
"""

from __future__ import annotations

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from quizhub.core.cache import AsyncTTLCache
from quizhub.core.errors import Authentication, ClaimMissingEmail, InvalidIdentityToken
from quizhub.schemas.common import AuthProvider
from quizhub.services.openid import DiscoveryError, OpenIDClient, ProviderRegistry, load_provider_settings

REDIRECT_URL = "http://localhost:5173/auth/callback"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

class TestDiscovery:
    @pytest.mark.asyncio
    async def test_discover_reads_metadata_and_keys(self, identity_provider):
        client = await OpenIDClient.discover(
            AuthProvider.GOOGLE,
            identity_provider.settings(),
            REDIRECT_URL,
            transport=identity_provider.transport,
        )
        assert client.issuer == identity_provider.issuer
        assert client.client_id == identity_provider.client_id
        urls = [str(r.url) for r in identity_provider.requests]
        assert urls == [
            f"{identity_provider.issuer}/.well-known/openid-configuration",
            f"{identity_provider.issuer}/jwks",
        ]

    @pytest.mark.asyncio
    async def test_incomplete_metadata(self, identity_provider):
        del identity_provider.metadata["token_endpoint"]
        with pytest.raises(DiscoveryError):
            await OpenIDClient.discover(
                AuthProvider.GOOGLE,
                identity_provider.settings(),
                REDIRECT_URL,
                transport=identity_provider.transport,
            )

    @pytest.mark.asyncio
    async def test_unreachable_issuer(self, identity_provider):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        with pytest.raises(httpx.HTTPStatusError):
            await OpenIDClient.discover(
                AuthProvider.GOOGLE,
                identity_provider.settings(),
                REDIRECT_URL,
                transport=transport,
            )


class TestAuthUrl:
    def test_auth_url_parameters(self, identity_provider):
        url = identity_provider.client().auth_url(state="Google")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert url.startswith(identity_provider.metadata["authorization_endpoint"])
        assert query["response_type"] == ["code"]
        assert query["client_id"] == [identity_provider.client_id]
        assert query["redirect_uri"] == [REDIRECT_URL]
        assert query["scope"] == ["openid email profile"]
        assert query["state"] == ["Google"]


# ---------------------------------------------------------------------------
# Identity token validation
# ---------------------------------------------------------------------------

class TestDecodeAndValidate:
    def test_valid_token(self, identity_provider):
        token = identity_provider.mint(
            "Player@Example.com", email_verified=True, preferred_username="Player1"
        )
        claims = identity_provider.client().decode_and_validate(token)

        assert claims.subject == "subject-1"
        assert claims.email == "player@example.com"
        assert claims.email_verified is True
        assert claims.preferred_username == "Player1"

    def test_unverified_email_by_default(self, identity_provider):
        claims = identity_provider.client().decode_and_validate(identity_provider.mint())
        assert claims.email_verified is False
        assert claims.preferred_username is None

    def test_foreign_signature(self, identity_provider, rsa_key):
        token = identity_provider.mint(signing_key=rsa_key)
        with pytest.raises(InvalidIdentityToken):
            identity_provider.client().decode_and_validate(token)

    def test_wrong_audience(self, identity_provider):
        token = identity_provider.mint(aud="someone-else")
        with pytest.raises(InvalidIdentityToken):
            identity_provider.client().decode_and_validate(token)

    def test_wrong_issuer(self, identity_provider):
        token = identity_provider.mint(iss="https://evil.example.test")
        with pytest.raises(InvalidIdentityToken):
            identity_provider.client().decode_and_validate(token)

    def test_expired(self, identity_provider):
        token = identity_provider.mint(exp=int(time.time()) - 60)
        with pytest.raises(InvalidIdentityToken):
            identity_provider.client().decode_and_validate(token)

    def test_unknown_key_id(self, identity_provider):
        identity_provider.kid = "rotated-away"
        token = identity_provider.mint()
        identity_provider.kid = "test-key-1"
        with pytest.raises(InvalidIdentityToken):
            identity_provider.client().decode_and_validate(token)

    def test_not_a_jwt(self, identity_provider):
        with pytest.raises(InvalidIdentityToken):
            identity_provider.client().decode_and_validate("garbage")

    def test_missing_email(self, identity_provider):
        token = identity_provider.mint(email=None)
        with pytest.raises(ClaimMissingEmail):
            identity_provider.client().decode_and_validate(token)

    def test_blank_email(self, identity_provider):
        token = identity_provider.mint(email="   ")
        with pytest.raises(ClaimMissingEmail):
            identity_provider.client().decode_and_validate(token)


# ---------------------------------------------------------------------------
# Code exchange
# ---------------------------------------------------------------------------

class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_exchange_returns_id_token(self, identity_provider):
        id_token = identity_provider.mint()
        identity_provider.codes["good-code"] = id_token

        assert await identity_provider.client().exchange_code("good-code") == id_token

        request = identity_provider.requests[-1]
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["redirect_uri"] == [REDIRECT_URL]

    @pytest.mark.asyncio
    async def test_rejected_code(self, identity_provider):
        with pytest.raises(Authentication):
            await identity_provider.client().exchange_code("bad-code")

    @pytest.mark.asyncio
    async def test_response_without_id_token(self, identity_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "at", "token_type": "Bearer"})

        client = identity_provider.client()
        client._transport = httpx.MockTransport(handler)
        with pytest.raises(Authentication):
            await client.exchange_code("good-code")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestProviderRegistry:
    @pytest.mark.asyncio
    async def test_configured_provider(self, provider_registry):
        client = await provider_registry.get_provider(AuthProvider.GOOGLE)
        assert client is not None
        assert client.provider is AuthProvider.GOOGLE

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, provider_registry):
        assert await provider_registry.get_provider(AuthProvider.MICROSOFT) is None

    @pytest.mark.asyncio
    async def test_missing_redirect_url(self, identity_provider):
        registry = ProviderRegistry(
            {AuthProvider.GOOGLE: identity_provider.settings()},
            None,
            cache=AsyncTTLCache(60),
            discover=identity_provider.discover,
        )
        assert await registry.get_provider(AuthProvider.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_discovery_cached(self, provider_registry, identity_provider):
        first = await provider_registry.get_provider(AuthProvider.GOOGLE)
        second = await provider_registry.get_provider(AuthProvider.GOOGLE)
        assert first is second
        assert len(identity_provider.requests) == 2

    @pytest.mark.asyncio
    async def test_failed_discovery_is_unavailable_then_retried(self, identity_provider):
        calls = 0

        async def discover(provider, config, redirect_url):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused")
            return identity_provider.client(provider)

        registry = ProviderRegistry(
            {AuthProvider.GOOGLE: identity_provider.settings()},
            REDIRECT_URL,
            cache=AsyncTTLCache(60),
            discover=discover,
        )

        assert await registry.get_provider(AuthProvider.GOOGLE) is None
        assert await registry.get_provider(AuthProvider.GOOGLE) is not None
        assert calls == 2

    @pytest.mark.asyncio
    async def test_get_all_providers(self, provider_registry):
        providers = dict(await provider_registry.get_all_providers())
        assert set(providers) == set(AuthProvider)
        assert providers[AuthProvider.GOOGLE] is not None
        assert providers[AuthProvider.MICROSOFT] is None

    @pytest.mark.asyncio
    async def test_initialize_never_raises(self, identity_provider):
        async def discover(provider, config, redirect_url):
            raise httpx.ConnectError("connection refused")

        registry = ProviderRegistry(
            {AuthProvider.GOOGLE: identity_provider.settings()},
            REDIRECT_URL,
            cache=AsyncTTLCache(60),
            discover=discover,
        )
        await registry.initialize()


class TestProviderSettings:
    def test_loaded_from_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_OPENID_ISSUER", "https://accounts.google.com")
        monkeypatch.setenv("GOOGLE_OPENID_CLIENT_ID", "client")
        monkeypatch.setenv("GOOGLE_OPENID_CLIENT_SECRET", "secret")

        config = load_provider_settings(AuthProvider.GOOGLE)
        assert config is not None
        assert config.issuer == "https://accounts.google.com"
        assert config.client_id == "client"

    def test_incomplete_environment(self, monkeypatch):
        monkeypatch.setenv("MICROSOFT_OPENID_ISSUER", "https://login.microsoftonline.com")
        monkeypatch.delenv("MICROSOFT_OPENID_CLIENT_ID", raising=False)
        monkeypatch.delenv("MICROSOFT_OPENID_CLIENT_SECRET", raising=False)

        assert load_provider_settings(AuthProvider.MICROSOFT) is None


# ---------------------------------------------------------------------------
# Malformed and slow providers
# ---------------------------------------------------------------------------

def _registry_with_transport(identity_provider, transport: httpx.MockTransport) -> ProviderRegistry:
    async def discover(provider, config, redirect_url):
        return await OpenIDClient.discover(provider, config, redirect_url, transport=transport)

    return ProviderRegistry(
        {AuthProvider.GOOGLE: identity_provider.settings()},
        REDIRECT_URL,
        cache=AsyncTTLCache(60),
        discover=discover,
    )


class TestUnusableProviders:
    @pytest.mark.asyncio
    async def test_metadata_not_an_object(self, identity_provider):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json=["not", "an", "object"])
        )
        with pytest.raises(DiscoveryError):
            await OpenIDClient.discover(
                AuthProvider.GOOGLE, identity_provider.settings(), REDIRECT_URL, transport=transport
            )

        registry = _registry_with_transport(identity_provider, transport)
        assert await registry.get_provider(AuthProvider.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_signing_keys_not_an_object(self, identity_provider):
        identity_provider.jwks = ["not", "an", "object"]
        registry = _registry_with_transport(identity_provider, identity_provider.transport)
        assert await registry.get_provider(AuthProvider.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_jwks_uri_not_a_string(self, identity_provider):
        identity_provider.metadata = {**identity_provider.metadata, "jwks_uri": 42}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=identity_provider.metadata)

        registry = _registry_with_transport(identity_provider, httpx.MockTransport(handler))
        assert await registry.get_provider(AuthProvider.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_discovery_timeout_is_unavailable(self, identity_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        registry = _registry_with_transport(identity_provider, httpx.MockTransport(handler))
        assert await registry.get_provider(AuthProvider.GOOGLE) is None

    @pytest.mark.asyncio
    async def test_token_endpoint_timeout_fails_authentication(self, identity_provider):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = identity_provider.client()
        client._transport = httpx.MockTransport(handler)
        with pytest.raises(Authentication):
            await client.exchange_code("good-code")


class TestEmailClaim:
    @pytest.mark.parametrize("email", ["not-an-email", "player@", "@example.com", "two@@example.com"])
    def test_malformed_email_rejected(self, identity_provider, email):
        token = identity_provider.mint(email)
        with pytest.raises(ClaimMissingEmail):
            identity_provider.client().decode_and_validate(token)

    def test_surrounding_whitespace_trimmed(self, identity_provider):
        token = identity_provider.mint("  Player@Example.com ")
        assert identity_provider.client().decode_and_validate(token).email == "player@example.com"
