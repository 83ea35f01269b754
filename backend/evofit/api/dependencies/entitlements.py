"""
Entitlement gate dependencies.

Every gated route declares its requirement as a dependency; the check runs
server-side on each request whatever the client has already validated.

Usage:
    @router.post("/exports/excel")
    async def export_excel(
        entitlements: Entitlements = Depends(require_feature("export.excel")),
    ):
        ...

    @router.post("/customers")
    async def add_customer(
        entitlements: Entitlements = Depends(require_quantity(Resource.CUSTOMERS)),
    ):
        ...
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status

from evofit.entitlements.audit import GateDenialEvent, get_audit_logger
from evofit.entitlements.errors import GateDeniedError
from evofit.entitlements.gate import FeatureRequirement, QuantityRequirement, Requirement
from evofit.entitlements.models import Entitlements, GateDecision
from evofit.entitlements.service import EntitlementsService
from evofit.entitlements.tiers import Resource
from evofit.platform.tenant_context import TenantContext, get_tenant_context

logger = logging.getLogger(__name__)


def get_entitlements_service(request: Request) -> EntitlementsService:
    """The process-wide EntitlementsService set up by create_app()."""
    service = getattr(request.app.state, "entitlements_service", None)
    if service is None:
        logger.error("Entitlements service not configured", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlements service not configured",
        )
    return service


def _deny(request: Request, tenant_ctx: TenantContext, decision: GateDecision) -> None:
    get_audit_logger().log_denial(GateDenialEvent.from_decision(
        tenant_id=tenant_ctx.tenant_id,
        decision=decision,
        user_id=tenant_ctx.user_id,
        endpoint=request.url.path,
        method=request.method,
    ))
    raise GateDeniedError(decision)


def create_gate_check(*requirements: Requirement) -> Callable:
    """
    Factory function to create a gate dependency.

    Args:
        requirements: All must pass (AND, first failure wins)

    Returns:
        A FastAPI dependency that returns the tenant's Entitlements when
        allowed and raises GateDeniedError (403) otherwise
    """

    async def check_gate(
        request: Request,
        service: EntitlementsService = Depends(get_entitlements_service),
    ) -> Entitlements:
        tenant_ctx = get_tenant_context(request)
        entitlements = await service.get_entitlements(tenant_ctx.tenant_id)
        decision = service.gate.check_all(entitlements, requirements)
        if not decision.allowed:
            _deny(request, tenant_ctx, decision)
        return entitlements

    return check_gate


def require_feature(feature: str, level: Optional[str] = None) -> Callable:
    """
    Gate on a feature, e.g. require_feature("export.excel").

    The descriptor is parsed when the route is declared, so a typo fails at
    import time instead of on the first request.
    """
    return create_gate_check(FeatureRequirement.parse(feature, level))


def require_quantity(resource: Resource, delta: int = 1) -> Callable:
    """Gate on adding `delta` of a resource, e.g. require_quantity(Resource.CUSTOMERS)."""
    return create_gate_check(QuantityRequirement(resource, delta))


# Pre-configured gates for common actions
check_analytics_access = require_feature("analytics.basic")
check_advanced_analytics_access = require_feature("analytics.advanced")
check_api_access = require_feature("api_access")
check_bulk_operations = require_feature("bulk_operations")
check_custom_branding = require_feature("custom_branding")
check_csv_export = require_feature("export.csv")
check_excel_export = require_feature("export.excel")
check_can_add_customer = require_quantity(Resource.CUSTOMERS)
check_can_add_meal_plan = require_quantity(Resource.MEAL_PLANS)
check_can_generate = require_quantity(Resource.AI_GENERATIONS)
