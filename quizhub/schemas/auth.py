"""Authentication request and response schemas."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, BeforeValidator, EmailStr, Field, model_validator

from .common import AuthProvider

USERNAME_MIN_LENGTH = 4
USERNAME_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 4
# bcrypt only reads the first 72 bytes
PASSWORD_MAX_LENGTH = 72


def _strip(value: object) -> object:
    return value.strip() if isinstance(value, str) else value


def normalize_username(value: str) -> str:
    """Trim and lowercase a username, rejecting anything not 4-100 ASCII letters/digits."""
    value = value.strip().lower()
    if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
        raise ValueError(
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
        )
    if not (value.isascii() and value.isalnum()):
        raise ValueError("Username may only contain letters and numbers")
    return value


def _check_password(value: str) -> str:
    if not value.isascii():
        raise ValueError("Password may only contain ASCII characters")
    return value


Email = Annotated[EmailStr, BeforeValidator(_strip), AfterValidator(str.lower)]
Username = Annotated[str, AfterValidator(normalize_username)]
Password = Annotated[
    str,
    BeforeValidator(_strip),
    Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH),
    AfterValidator(_check_password),
]


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class BasicRegisterRequest(BaseModel):
    """Register an account with email, username and password."""
    email: Email
    username: Username
    password: Password


class BasicLoginRequest(BaseModel):
    email: Email
    password: Password


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class OIDAuthenticateRequest(BaseModel):
    """Log in with a provider using either an authorization code or an identity token."""
    provider: AuthProvider
    code: Optional[str] = Field(default=None, min_length=1)
    id_token: Optional[str] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _one_credential(self) -> "OIDAuthenticateRequest":
        if (self.code is None) == (self.id_token is None):
            raise ValueError("Exactly one of code or id_token must be provided")
        return self


class OIDCreateRequest(BaseModel):
    """Create an account from a provider identity token plus chosen credentials."""
    provider: AuthProvider
    id_token: str = Field(min_length=1)
    username: Username
    password: Password


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class TokenResponse(BaseModel):
    token: str
    refresh_token: str
    expiry: int  # UTC unix timestamp of the access token expiry


class OIDProvider(BaseModel):
    auth_url: str


class OIDProvidersResponse(BaseModel):
    providers: dict[AuthProvider, OIDProvider]


class OIDNewAccountResponse(BaseModel):
    """No account uses this email yet; the client should collect a username and password."""
    status: Literal["new"] = "new"
    id_token: str
    email: str
    default_username: Optional[str] = None


class OIDLinkedResponse(TokenResponse):
    """Existing account linked to this provider; logged in."""
    status: Literal["linked"] = "linked"


OIDAuthenticateResponse = Annotated[
    Union[OIDNewAccountResponse, OIDLinkedResponse], Field(discriminator="status")
]
