"""
FastAPI application entry point for the EvoFit entitlements API.

Tenant context is enforced by TenantContextMiddleware: every /api/ route
requires a valid JWT. Gate denials return 403; an entitlements service that
cannot reach its data sources returns 503 and never guesses.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from evofit.api.routes import entitlements
from evofit.entitlements.errors import (
    GateDeniedError,
    ProviderUnavailableError,
    UnknownFeatureError,
    UnknownStatusError,
    UnknownTierError,
)
from evofit.entitlements.providers import DatabaseSubscriptionProvider, DatabaseUsageProvider
from evofit.entitlements.service import EntitlementsService
from evofit.platform.tenant_context import TenantContextMiddleware

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_entitlements_service() -> EntitlementsService:
    """Database-backed service with the process-wide cache and tier catalog."""
    return EntitlementsService(
        subscription_provider=DatabaseSubscriptionProvider(),
        usage_provider=DatabaseUsageProvider(),
    )


def _tenant_id(request: Request) -> str:
    if hasattr(request.state, "tenant_context"):
        return request.state.tenant_context.tenant_id
    return "unknown"


def create_app(entitlements_service: Optional[EntitlementsService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        entitlements_service: Service to use; when omitted the database-backed
            service is built at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info("Starting EvoFit entitlements API")

        if not os.getenv("JWT_SECRET"):
            logger.warning(
                "JWT_SECRET not configured. Protected endpoints will return 503."
            )
        if not os.getenv("DATABASE_URL"):
            logger.error(
                "DATABASE_URL is not set. Entitlement lookups will return 503."
            )

        if app.state.entitlements_service is None:
            app.state.entitlements_service = build_entitlements_service()

        yield

        logger.info("Shutting down EvoFit entitlements API")

    app = FastAPI(
        title="EvoFit Entitlements API",
        description="Tier-based feature and usage-limit enforcement",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.entitlements_service = entitlements_service

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # CRITICAL: Add tenant context middleware
    app.middleware("http")(TenantContextMiddleware())

    app.include_router(entitlements.router)
    app.include_router(entitlements.admin_router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.exception_handler(GateDeniedError)
    async def gate_denied_handler(request: Request, exc: GateDeniedError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(ProviderUnavailableError)
    async def provider_unavailable_handler(request: Request, exc: ProviderUnavailableError):
        logger.warning(
            "Entitlements unavailable",
            extra={
                "tenant_id": _tenant_id(request),
                "detail": exc.detail,
                "path": request.url.path,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=exc.to_dict(),
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(UnknownFeatureError)
    async def unknown_feature_handler(request: Request, exc: UnknownFeatureError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "UNKNOWN_FEATURE", "detail": exc.detail},
        )

    @app.exception_handler(UnknownTierError)
    @app.exception_handler(UnknownStatusError)
    async def misconfigured_handler(request: Request, exc: Exception):
        logger.critical(
            "Stored subscription does not match the tier catalog",
            extra={
                "tenant_id": _tenant_id(request),
                "error_type": type(exc).__name__,
                "stored_value": repr(exc.value),
                "path": request.url.path,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "ENTITLEMENTS_MISCONFIGURED"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        logger.error(
            "Unhandled exception",
            extra={
                "tenant_id": _tenant_id(request),
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path
            },
            exc_info=True
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred"
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
