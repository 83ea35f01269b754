"""
Multi-tenant context enforcement.

CRITICAL SECURITY REQUIREMENTS:
- tenant_id is ALWAYS extracted from the JWT, NEVER from request body/query
- All /api/ requests without a valid token are rejected
- Entitlements are resolved for the token's tenant only

Tokens are HS256 JWTs signed with JWT_SECRET. Claims:
- sub: user id
- tenant_id (or org_id): the trainer account the user acts for
- roles: list of role names ("admin" unlocks the admin endpoints)
"""

import os
import logging
from typing import Optional

import jwt
from fastapi import Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"
PUBLIC_PATHS = {"/", "/health", "/docs", "/redoc", "/openapi.json"}


class TenantContext:
    """Tenant context extracted from a verified JWT."""

    def __init__(
        self,
        tenant_id: str,
        user_id: str,
        roles: Optional[list[str]] = None,
    ):
        if not tenant_id:
            raise ValueError("tenant_id cannot be empty")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.roles = list(roles or [])

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self.tenant_id}, user_id={self.user_id}, roles={self.roles})"


def _error_response(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


class TenantContextMiddleware:
    """
    FastAPI middleware that attaches TenantContext to request.state.

    Errors are returned as responses rather than raised: exceptions raised
    in HTTP middleware bypass the app's exception handlers.
    """

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        """
        Environment variables are read lazily so the module imports without them.
        """
        self._secret = secret
        self._algorithm = algorithm

    @property
    def secret(self) -> Optional[str]:
        return self._secret or os.getenv("JWT_SECRET")

    @property
    def algorithm(self) -> str:
        return self._algorithm or os.getenv("JWT_ALGORITHM", "HS256")

    async def __call__(self, request: Request, call_next):
        """
        Process request and extract tenant context from JWT.

        SECURITY: tenant_id is ONLY extracted from JWT, never from request body/query.
        """
        path = request.url.path
        if path in PUBLIC_PATHS or not path.startswith("/api/"):
            return await call_next(request)

        secret = self.secret
        if not secret:
            logger.warning(
                "Authentication not configured - protected endpoint accessed",
                extra={"path": path, "method": request.method},
            )
            return _error_response(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "Authentication service not configured",
            )

        credentials: Optional[HTTPAuthorizationCredentials] = await security(request)
        if not credentials or not credentials.credentials:
            logger.warning("Request missing authorization token", extra={
                "path": path,
                "method": request.method,
            })
            return _error_response(
                status.HTTP_401_UNAUTHORIZED,
                "Missing or invalid authorization token",
            )

        try:
            payload = jwt.decode(
                credentials.credentials,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["sub"]},
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Invalid JWT token", extra={
                "error": str(e),
                "error_type": type(e).__name__,
                "path": path,
            })
            return _error_response(
                status.HTTP_401_UNAUTHORIZED,
                "Invalid or expired token",
            )

        tenant_id = payload.get("tenant_id") or payload.get("org_id")
        if not tenant_id:
            logger.warning("Token missing tenant claim", extra={
                "user_id": payload.get("sub"),
                "path": path,
            })
            return _error_response(
                status.HTTP_403_FORBIDDEN,
                "Token is missing tenant context",
            )

        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]

        request.state.tenant_context = TenantContext(
            tenant_id=str(tenant_id),
            user_id=str(payload["sub"]),
            roles=[str(role) for role in roles],
        )

        response = await call_next(request)
        response.headers["X-Tenant-ID"] = str(tenant_id)
        return response


def get_tenant_context(request: Request) -> TenantContext:
    """
    Extract tenant context from request state.

    Raises 403 if tenant context is missing.
    Use this in route handlers to access tenant_id.
    """
    if not hasattr(request.state, "tenant_context"):
        logger.error("Route handler accessed without tenant context", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context not available"
        )

    return request.state.tenant_context


def require_admin(request: Request) -> TenantContext:
    """FastAPI dependency: tenant context with the admin role, else 403."""
    tenant_ctx = get_tenant_context(request)
    if not tenant_ctx.is_admin:
        logger.warning("Admin endpoint accessed without admin role", extra={
            "tenant_id": tenant_ctx.tenant_id,
            "user_id": tenant_ctx.user_id,
            "path": request.url.path,
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required"
        )
    return tenant_ctx
