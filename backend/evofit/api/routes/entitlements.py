"""
Entitlements API routes.

- GET  /api/v1/entitlements         resolved entitlements for the caller's tenant
- POST /api/v1/entitlements/check   evaluate one gate without enforcing it
- DELETE /api/v1/admin/entitlements/cache[/{tenant_id}]   admin cache flush

The UI mirrors these responses; enforcement happens in the gate
dependencies on every gated route, never in the client.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, model_validator

from evofit.api.dependencies.entitlements import get_entitlements_service
from evofit.entitlements.errors import EntitlementCacheError, UnknownFeatureError
from evofit.entitlements.service import EntitlementsService
from evofit.entitlements.tiers import Resource
from evofit.platform.tenant_context import TenantContext, get_tenant_context, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/entitlements", tags=["entitlements"])
admin_router = APIRouter(prefix="/api/v1/admin/entitlements", tags=["admin"])


# Request/Response models
class EntitlementCheckRequest(BaseModel):
    """Either a feature gate or a quantity gate, not both."""
    feature: Optional[str] = Field(None, description="Feature descriptor, e.g. export.excel")
    level: Optional[str] = Field(None, description="Required analytics level for 'analytics'")
    resource: Optional[Resource] = Field(None, description="Counted resource, e.g. customers")
    delta: int = Field(1, ge=0, description="How many of the resource the action adds")
    current: Optional[int] = Field(None, ge=0, description="Live count overriding the snapshot")

    @model_validator(mode="after")
    def exactly_one_gate(self) -> "EntitlementCheckRequest":
        if (self.feature is None) == (self.resource is None):
            raise ValueError("Provide exactly one of 'feature' or 'resource'")
        return self


class GateDecisionResponse(BaseModel):
    """Gate decision as reported by the check endpoint."""
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    current_tier: str
    required_tier: Optional[str] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    action: Optional[str] = None


class CacheFlushResponse(BaseModel):
    """Result of an admin cache flush."""
    invalidated: int
    tenant_id: Optional[str] = None


@router.get("", response_model=dict)
async def get_entitlements(
    request: Request,
    service: EntitlementsService = Depends(get_entitlements_service),
) -> dict:
    """
    Return resolved entitlements for the current tenant.

    Provider failures surface as 503 (never as a guessed answer).
    """
    tenant_ctx = get_tenant_context(request)
    entitlements = await service.get_entitlements(tenant_ctx.tenant_id)
    return entitlements.to_dict(now=service.now())


@router.post("/check", response_model=GateDecisionResponse)
async def check_entitlement(
    request: Request,
    check_request: EntitlementCheckRequest,
    service: EntitlementsService = Depends(get_entitlements_service),
) -> GateDecisionResponse:
    """
    Evaluate a gate for the current tenant and report the decision (200).

    A denial here is informational; gated routes enforce with 403.
    """
    tenant_ctx = get_tenant_context(request)

    try:
        if check_request.feature is not None:
            decision = await service.check_feature(
                tenant_ctx.tenant_id, check_request.feature, check_request.level,
            )
        else:
            decision = await service.check_quantity(
                tenant_ctx.tenant_id,
                check_request.resource,
                delta=check_request.delta,
                current=check_request.current,
            )
    except UnknownFeatureError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.detail,
        )

    return GateDecisionResponse(**decision.to_dict())


@admin_router.delete("/cache", response_model=CacheFlushResponse)
async def flush_entitlements_cache(
    admin_ctx: TenantContext = Depends(require_admin),
    service: EntitlementsService = Depends(get_entitlements_service),
) -> CacheFlushResponse:
    """Flush all cached entitlements (e.g. after a tier catalog change)."""
    logger.warning("Admin flushing all cached entitlements", extra={
        "user_id": admin_ctx.user_id,
        "tenant_id": admin_ctx.tenant_id,
    })
    reason = f"admin_flush_all:{admin_ctx.user_id}"
    try:
        count = service.invalidate_all(reason=reason)
    except EntitlementCacheError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return CacheFlushResponse(invalidated=count)


@admin_router.delete("/cache/{tenant_id}", response_model=CacheFlushResponse)
async def flush_tenant_entitlements(
    tenant_id: str,
    admin_ctx: TenantContext = Depends(require_admin),
    service: EntitlementsService = Depends(get_entitlements_service),
) -> CacheFlushResponse:
    """Flush one tenant's cached entitlements."""
    reason = f"admin_flush:{admin_ctx.user_id}"
    try:
        deleted = service.invalidate(tenant_id, reason=reason)
    except EntitlementCacheError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return CacheFlushResponse(invalidated=1 if deleted else 0, tenant_id=tenant_id)
