"""
Authentication endpoints.

POST /auth/basic/register     Register with email/username/password
POST /auth/basic/login        Log in with email/password
GET  /auth/oid/providers      Available OpenID providers and their auth URLs
POST /auth/oid/authenticate   Log in with an OpenID code or identity token
POST /auth/oid/create         Create an account from an OpenID identity token
POST /auth/token/refresh      Exchange a refresh token for a new session
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from quizhub.core.auth import get_credential_store, get_token_service
from quizhub.schemas.auth import (
    BasicLoginRequest,
    BasicRegisterRequest,
    OIDAuthenticateRequest,
    OIDAuthenticateResponse,
    OIDCreateRequest,
    OIDLinkedResponse,
    OIDNewAccountResponse,
    OIDProvider,
    OIDProvidersResponse,
    RefreshTokenRequest,
    TokenResponse,
)
from quizhub.schemas.common import ErrorResponse
from quizhub.services.credentials import CredentialStore
from quizhub.services.identity import AccountAbsent, IdentityService
from quizhub.services.openid import ProviderRegistry
from quizhub.services.tokens import TokenPair, TokenService

router = APIRouter(responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}})


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.provider_registry


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        token=tokens.token, refresh_token=tokens.refresh_token, expiry=tokens.expiry
    )


# ---------------------------------------------------------------------------
# Email/Password
# ---------------------------------------------------------------------------

@router.post("/basic/register", response_model=TokenResponse, status_code=201)
async def basic_register(
    body: BasicRegisterRequest,
    identity: IdentityService = Depends(get_identity_service),
    store: CredentialStore = Depends(get_credential_store),
):
    """Register a new account with email, username and password."""
    tokens = await identity.register(store, body.email, body.username, body.password)
    return _token_response(tokens)


@router.post("/basic/login", response_model=TokenResponse)
async def basic_login(
    body: BasicLoginRequest,
    identity: IdentityService = Depends(get_identity_service),
    store: CredentialStore = Depends(get_credential_store),
):
    """Authenticate with email and password."""
    tokens = await identity.login(store, body.email, body.password)
    return _token_response(tokens)


# ---------------------------------------------------------------------------
# OpenID
# ---------------------------------------------------------------------------

@router.get("/oid/providers", response_model=OIDProvidersResponse)
async def openid_providers(
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """List the providers that are currently usable, with their login URLs."""
    providers = await registry.get_all_providers()
    return OIDProvidersResponse(
        providers={
            provider: OIDProvider(auth_url=client.auth_url(state=provider.value))
            for provider, client in providers
            if client is not None
        }
    )


@router.post("/oid/authenticate", response_model=OIDAuthenticateResponse)
async def openid_authenticate(
    body: OIDAuthenticateRequest,
    identity: IdentityService = Depends(get_identity_service),
    store: CredentialStore = Depends(get_credential_store),
):
    """
    Check a provider login.

    Responds with ``status: "new"`` when no account uses the email yet, or
    logs in with ``status: "linked"`` when the account is linked to the provider.
    """
    result = await identity.authenticate(
        store, body.provider, code=body.code, id_token=body.id_token
    )
    if isinstance(result, AccountAbsent):
        return OIDNewAccountResponse(
            id_token=result.id_token,
            email=result.claims.email,
            default_username=result.default_username,
        )
    return OIDLinkedResponse(**_token_response(result.tokens).model_dump())


@router.post("/oid/create", response_model=TokenResponse, status_code=201)
async def openid_create(
    body: OIDCreateRequest,
    identity: IdentityService = Depends(get_identity_service),
    store: CredentialStore = Depends(get_credential_store),
):
    """Create an account from a provider identity token and user supplied details."""
    tokens = await identity.create_account(
        store, body.provider, body.id_token, body.username, body.password
    )
    return _token_response(tokens)


# ---------------------------------------------------------------------------
# Session Management
# ---------------------------------------------------------------------------

@router.post("/token/refresh", response_model=TokenResponse)
async def refresh_token(
    body: RefreshTokenRequest,
    tokens: TokenService = Depends(get_token_service),
    store: CredentialStore = Depends(get_credential_store),
):
    """Issue a new session; the presented refresh token is invalidated."""
    return _token_response(await tokens.refresh(store, body.refresh_token))
