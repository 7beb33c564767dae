"""
Error taxonomy and its mapping onto HTTP responses.

Every error that crosses the HTTP boundary is rendered as::

    {"name": "<stable machine name>", "message": "<human message>", "data": ...}

``data`` is only populated for validation errors, where it maps each
offending field to its list of reasons.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

log = structlog.get_logger()

INTERNAL_ERROR_MESSAGE = "Internal server error"


class AppError(Exception):
    """Base for all errors with a defined HTTP representation."""

    name: str = "server"
    status_code: int = 500
    message: str = INTERNAL_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    @property
    def data(self) -> Any:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "message": self.message, "data": self.data}


# ---------------------------------------------------------------------------
# Token errors: the caller must re-authenticate
# ---------------------------------------------------------------------------

class TokenError(AppError):
    pass


class InvalidToken(TokenError):
    name = "auth:invalid_token"
    status_code = 401
    message = "Invalid token"


class InvalidRefreshToken(TokenError):
    name = "auth:invalid_refresh_token"
    status_code = 401
    message = "Invalid refresh token"


class CreateToken(TokenError):
    name = "auth:token_create_failed"
    status_code = 500
    message = "Failed to create token, try logging in again"


# ---------------------------------------------------------------------------
# Account errors: user-correctable
# ---------------------------------------------------------------------------

class AuthError(AppError):
    pass


class EmailExists(AuthError):
    name = "auth:email_exists"
    status_code = 409
    message = "That email address is already in use"


class UsernameExists(AuthError):
    name = "auth:username_exists"
    status_code = 409
    message = "That username is already in use"


class EmailNotFound(AuthError):
    name = "auth:email_not_found"
    status_code = 404
    message = "No account with that email address"


class IncorrectPassword(AuthError):
    name = "auth:incorrect_password"
    status_code = 400
    message = "Incorrect password provided"


# ---------------------------------------------------------------------------
# OpenID errors
# ---------------------------------------------------------------------------

class OpenIDError(AppError):
    pass


class NotLinked(OpenIDError):
    name = "oid:not_linked"
    status_code = 409
    message = (
        "An account already exists with the same email, please use the existing "
        "account password. Once logged in you can link your account in settings"
    )


class ProviderUnavailable(OpenIDError):
    name = "oid:provider_unavailable"
    status_code = 503
    message = "That authentication provider is currently unavailable, try again later."


class InvalidIdentityToken(OpenIDError):
    name = "oid:invalid_token"
    status_code = 400
    message = "Authentication token is invalid, try again."


class Authentication(OpenIDError):
    name = "oid:auth_failed"
    status_code = 400
    message = "Failed to authenticate with OpenID provider"


class ClaimMissingEmail(OpenIDError):
    name = "oid:claim_missing_email"
    status_code = 400
    message = "Failed to determine account email address."


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------

class ValidationFailed(AppError):
    name = "validation"
    status_code = 422
    message = "Validation error occurred"

    def __init__(self, fields: dict[str, list[str]]):
        super().__init__()
        self.fields = fields

    @property
    def data(self) -> dict[str, list[str]]:
        return self.fields


class JsonParseError(AppError):
    name = "json_parse"
    status_code = 400
    message = "Request body is not valid JSON"


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _field_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    """Group pydantic errors by field, dropping the ``body`` location prefix."""
    fields: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        key = ".".join(loc) or "body"
        fields.setdefault(key, []).append(error.get("msg", "Invalid value"))
    return fields


def _render(error: AppError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log.info(
        "http.error",
        path=request.url.path,
        name=exc.name,
        status=exc.status_code,
    )
    return _render(exc)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if any(error.get("type") == "json_invalid" for error in exc.errors()):
        return _render(JsonParseError())
    return _render(ValidationFailed(_field_errors(exc)))


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Full detail stays in the server log; clients only see the generic message.
    log.exception("http.storage_error", path=request.url.path, error=str(exc))
    return _render(AppError())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
