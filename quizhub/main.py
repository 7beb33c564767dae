"""
Quiz Hub API Server

Entry point for the FastAPI application.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from quizhub.core.config import Settings, get_settings
from quizhub.core.database import dispose_db
from quizhub.core.errors import register_error_handlers
from quizhub.core.logging import configure_logging
from quizhub.api.v1 import router as api_v1_router
from quizhub.api.v1.auth import router as auth_router
from quizhub.services.identity import IdentityService
from quizhub.services.openid import ProviderRegistry
from quizhub.services.tokens import TokenService

log = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    *,
    provider_registry: Optional[ProviderRegistry] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Quiz Hub",
        description="Accounts, sessions and OpenID login for the quiz platform.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Process-wide services, shared by every request
    token_service = TokenService.from_settings(settings)
    registry = provider_registry or ProviderRegistry.from_settings(settings)
    app.state.token_service = token_service
    app.state.provider_registry = registry
    app.state.identity_service = IdentityService(registry, token_service)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    register_error_handlers(app)

    # Auth routes (not versioned)
    app.include_router(auth_router, prefix="/auth", tags=["Authentication"])

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check endpoint for startup probes."""
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        log.info("Quiz Hub starting")
        # Best effort; failures are logged by the registry
        app.state.provider_warmup = asyncio.create_task(registry.initialize())

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("Quiz Hub shutting down")
        warmup = getattr(app.state, "provider_warmup", None)
        if warmup is not None and not warmup.done():
            warmup.cancel()
        await dispose_db()

    return app


app = create_app()


def run() -> None:
    """CLI entry point for the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("quizhub.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
