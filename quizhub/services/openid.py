"""
OpenID provider clients and the registry that caches them.

Each configured provider is discovered once (issuer metadata + signing keys)
and kept for a fixed TTL. A provider that cannot be configured or reached is
reported as absent, never as an error: callers treat it as temporarily
unavailable.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx
import jwt
import structlog
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from email_validator import EmailNotValidError, validate_email
from pydantic import ValidationError

from quizhub.core.cache import AsyncTTLCache
from quizhub.core.config import OpenIDProviderSettings, Settings
from quizhub.core.errors import Authentication, ClaimMissingEmail, InvalidIdentityToken
from quizhub.schemas.common import OPENID_SCOPES, AuthProvider

log = structlog.get_logger()

DISCOVERY_PATH = "/.well-known/openid-configuration"
REQUIRED_METADATA = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


class DiscoveryError(Exception):
    """Provider metadata was unusable."""


@dataclass(frozen=True)
class IdentityClaims:
    subject: str
    email: str
    email_verified: bool = False
    preferred_username: Optional[str] = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class OpenIDClient:
    """A discovered OpenID provider: authorization URL, code exchange, token validation."""

    def __init__(
        self,
        provider: AuthProvider,
        *,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        metadata: dict[str, Any],
        jwks: dict[str, Any],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_url = redirect_url
        self.metadata = metadata
        self._keys = jwt.PyJWKSet.from_dict(jwks)
        self._timeout = timeout
        self._transport = transport

    @property
    def issuer(self) -> str:
        return self.metadata["issuer"]

    @classmethod
    async def discover(
        cls,
        provider: AuthProvider,
        config: OpenIDProviderSettings,
        redirect_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OpenIDClient":
        """Fetch the issuer's metadata document and signing keys."""
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as http:
            response = await http.get(config.issuer.rstrip("/") + DISCOVERY_PATH)
            response.raise_for_status()
            metadata = response.json()
            if not isinstance(metadata, dict):
                raise DiscoveryError(f"Metadata for {provider.value} is not a JSON object")

            missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
            if missing:
                raise DiscoveryError(f"Metadata for {provider.value} is missing {', '.join(missing)}")

            response = await http.get(metadata["jwks_uri"])
            response.raise_for_status()
            jwks = response.json()
            if not isinstance(jwks, dict):
                raise DiscoveryError(f"Signing keys for {provider.value} are not a JSON object")

        client = cls(
            provider,
            client_id=config.client_id,
            client_secret=config.client_secret,
            redirect_url=redirect_url,
            metadata=metadata,
            jwks=jwks,
            timeout=timeout,
            transport=transport,
        )
        log.debug("openid.provider_discovered", provider=provider.value, issuer=client.issuer)
        return client

    def auth_url(self, state: Optional[str] = None) -> str:
        """URL the browser is sent to in order to log in with this provider."""
        return prepare_grant_uri(
            self.metadata["authorization_endpoint"],
            self.client_id,
            "code",
            redirect_uri=self.redirect_url,
            scope=OPENID_SCOPES,
            state=state or self.provider.value,
        )

    async def exchange_code(self, code: str) -> str:
        """Redeem an authorization code, returning the raw identity token."""
        try:
            async with AsyncOAuth2Client(
                client_id=self.client_id,
                client_secret=self._client_secret,
                redirect_uri=self.redirect_url,
                scope=OPENID_SCOPES,
                timeout=self._timeout,
                transport=self._transport,
            ) as oauth:
                token = await oauth.fetch_token(
                    self.metadata["token_endpoint"],
                    grant_type="authorization_code",
                    code=code,
                )
        except (httpx.HTTPError, AuthlibBaseError, ValueError) as exc:
            log.warning(
                "openid.exchange_failed", provider=self.provider.value, error=str(exc)
            )
            raise Authentication() from exc

        id_token = token.get("id_token")
        if not id_token:
            log.warning("openid.exchange_missing_id_token", provider=self.provider.value)
            raise Authentication()
        return id_token

    def decode_and_validate(self, id_token: str) -> IdentityClaims:
        """Verify signature, issuer, audience and expiry, then extract claims."""
        try:
            signing_key = self._signing_key(jwt.get_unverified_header(id_token))
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=[signing_key.algorithm_name],
                audience=self.client_id,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except (jwt.PyJWTError, KeyError) as exc:
            log.warning(
                "openid.invalid_token", provider=self.provider.value, error=str(exc)
            )
            raise InvalidIdentityToken() from exc

        email = claims.get("email")
        if not isinstance(email, str) or not email.strip():
            raise ClaimMissingEmail()
        try:
            validate_email(email.strip(), check_deliverability=False)
        except EmailNotValidError as exc:
            log.warning("openid.invalid_email_claim", provider=self.provider.value)
            raise ClaimMissingEmail() from exc

        preferred_username = claims.get("preferred_username")
        return IdentityClaims(
            subject=str(claims["sub"]),
            email=email.strip().lower(),
            email_verified=claims.get("email_verified") in (True, "true"),
            preferred_username=preferred_username if isinstance(preferred_username, str) else None,
        )

    def _signing_key(self, header: dict[str, Any]) -> jwt.PyJWK:
        kid = header.get("kid")
        if kid is None:
            if len(self._keys.keys) != 1:
                raise KeyError("Token has no key id and the provider publishes several keys")
            return self._keys.keys[0]
        return self._keys[kid]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Discover = Callable[[AuthProvider, OpenIDProviderSettings, str], Awaitable[OpenIDClient]]

DISCOVERY_ERRORS = (
    httpx.HTTPError, jwt.PyJWTError, DiscoveryError, KeyError, TypeError, ValueError
)


def load_provider_settings(provider: AuthProvider) -> Optional[OpenIDProviderSettings]:
    """Read ``{PREFIX}_ISSUER``, ``_CLIENT_ID`` and ``_CLIENT_SECRET`` for a provider."""
    try:
        return OpenIDProviderSettings(_env_prefix=f"{provider.env_prefix}_")
    except ValidationError as exc:
        missing = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        log.warning(
            "openid.provider_not_configured",
            provider=provider.value,
            env_prefix=provider.env_prefix,
            missing=missing,
        )
        return None


class ProviderRegistry:
    """One cached ``OpenIDClient`` per configured provider."""

    def __init__(
        self,
        configs: dict[AuthProvider, Optional[OpenIDProviderSettings]],
        redirect_url: Optional[str],
        *,
        cache: AsyncTTLCache[AuthProvider, OpenIDClient],
        discover: Optional[Discover] = None,
        timeout: float = 10.0,
    ):
        self._configs = configs
        self._redirect_url = redirect_url
        self._cache = cache
        self._timeout = timeout
        self._discover = discover or self._discover_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        if not settings.openid_redirect_url:
            log.warning("openid.redirect_url_missing")
        ttl = timedelta(hours=settings.openid_cache_ttl_hours).total_seconds()
        return cls(
            {provider: load_provider_settings(provider) for provider in AuthProvider},
            settings.openid_redirect_url,
            cache=AsyncTTLCache(ttl),
            timeout=settings.openid_timeout_seconds,
        )

    async def _discover_client(
        self, provider: AuthProvider, config: OpenIDProviderSettings, redirect_url: str
    ) -> OpenIDClient:
        return await OpenIDClient.discover(
            provider, config, redirect_url, timeout=self._timeout
        )

    async def get_provider(self, provider: AuthProvider) -> Optional[OpenIDClient]:
        """Cached client for ``provider``, discovering it when absent or expired.

        Returns ``None`` when the provider is unconfigured or discovery fails.
        """
        config = self._configs.get(provider)
        if config is None or not self._redirect_url:
            return None

        redirect_url = self._redirect_url
        try:
            return await self._cache.get_or_populate(
                provider, lambda: self._discover(provider, config, redirect_url)
            )
        except DISCOVERY_ERRORS as exc:
            log.error(
                "openid.provider_unavailable", provider=provider.value, error=str(exc)
            )
            return None

    async def get_all_providers(self) -> list[tuple[AuthProvider, Optional[OpenIDClient]]]:
        """Resolve every known provider concurrently."""
        providers = list(AuthProvider)
        clients = await asyncio.gather(*(self.get_provider(p) for p in providers))
        return list(zip(providers, clients))

    async def initialize(self) -> None:
        """Warm the cache so the first logins skip discovery. Never raises."""
        providers = list(AuthProvider)
        results = await asyncio.gather(
            *(self.get_provider(p) for p in providers), return_exceptions=True
        )
        ready = []
        for provider, result in zip(providers, results):
            if isinstance(result, Exception):
                log.error("openid.warmup_failed", provider=provider.value, error=str(result))
            elif result is not None:
                ready.append(provider.value)
        log.info("openid.providers_initialized", ready=ready)
