"""
Canonical entitlement value objects.

Provides:
- UsageSnapshot: point-in-time resource counts for a tenant
- SubscriptionRecord: tier + billing status consumed by the engine
- ResourceUsage: limit vs usage for one resource, with derived flags
- FeatureSet: feature flags copied from a TierDefinition
- Entitlements: immutable per-tenant result, cached wholesale
- GateDecision: allow/deny outcome of a gate check

All of these are immutable. Entitlements are never partially updated;
a changed subscription produces a new value.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from evofit.entitlements.tiers import (
    AnalyticsLevel,
    ExportFormat,
    Resource,
    SubscriptionStatus,
    Tier,
    TierDefinition,
    is_unlimited,
)

NEAR_LIMIT_THRESHOLD = 0.8


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DenialCode(str, Enum):
    """Machine-readable reason codes for gate denials."""

    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    FEATURE_NOT_IN_TIER = "feature_not_in_tier"
    LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class UsageSnapshot:
    """Current resource counts for a tenant. Supplied externally, never mutated."""

    customer_count: int = 0
    meal_plan_count: int = 0
    ai_generation_count: int = 0

    def __post_init__(self):
        for name in ("customer_count", "meal_plan_count", "ai_generation_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    def count_for(self, resource: Union[Resource, str]) -> int:
        resource = Resource(resource)
        if resource is Resource.CUSTOMERS:
            return self.customer_count
        if resource is Resource.MEAL_PLANS:
            return self.meal_plan_count
        return self.ai_generation_count

    def to_dict(self) -> Dict[str, int]:
        return {resource.value: self.count_for(resource) for resource in Resource}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageSnapshot":
        return cls(
            customer_count=int(data.get(Resource.CUSTOMERS.value, 0)),
            meal_plan_count=int(data.get(Resource.MEAL_PLANS.value, 0)),
            ai_generation_count=int(data.get(Resource.AI_GENERATIONS.value, 0)),
        )


@dataclass(frozen=True)
class SubscriptionRecord:
    """A tenant's subscription as the engine sees it."""

    tenant_id: str
    tier: Tier
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None

    def grants_access(self, now: Optional[datetime] = None) -> bool:
        """
        Whether this subscription currently grants access to gated actions.

        Canceled subscriptions keep access until the paid period ends.
        """
        if self.status.grants_access:
            return True
        if self.status is SubscriptionStatus.CANCELED and self.current_period_end is not None:
            return (now or utcnow()) < self.current_period_end
        return False

    @property
    def access_ends_at(self) -> Optional[datetime]:
        """When a canceled subscription's paid access runs out, else None."""
        if self.status is SubscriptionStatus.CANCELED:
            return self.current_period_end
        return None

    @classmethod
    def none(cls, tenant_id: str) -> "SubscriptionRecord":
        """Record for a tenant with no subscription: Starter definitions, no access."""
        return cls(tenant_id=tenant_id, tier=Tier.STARTER, status=SubscriptionStatus.NONE)


@dataclass(frozen=True)
class ResourceUsage:
    """Limit vs usage for one resource."""

    resource: Resource
    limit: int
    used: int
    at_limit: bool
    near_limit: bool
    percentage: int

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @classmethod
    def compute(cls, resource: Resource, limit: int, used: int) -> "ResourceUsage":
        """Derive at/near-limit flags. Unlimited resources are never at or near limit."""
        if is_unlimited(limit):
            return cls(resource, limit, used, at_limit=False, near_limit=False, percentage=0)
        if limit == 0:
            percentage = 100
        else:
            percentage = min(100, round(used * 100 / limit))
        return cls(
            resource,
            limit,
            used,
            at_limit=used >= limit,
            near_limit=used >= NEAR_LIMIT_THRESHOLD * limit,
            percentage=percentage,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max": self.limit,
            "used": self.used,
            "percentage": self.percentage,
            "at_limit": self.at_limit,
            "near_limit": self.near_limit,
        }


@dataclass(frozen=True)
class FeatureSet:
    """Feature flags granted to a tenant."""

    analytics: AnalyticsLevel
    export_formats: FrozenSet[ExportFormat]
    api_access: bool
    bulk_operations: bool
    custom_branding: bool

    @classmethod
    def from_definition(cls, definition: TierDefinition) -> "FeatureSet":
        return cls(
            analytics=definition.analytics,
            export_formats=definition.export_formats,
            api_access=definition.api_access,
            bulk_operations=definition.bulk_operations,
            custom_branding=definition.custom_branding,
        )

    def exports(self, export_format: ExportFormat) -> bool:
        return export_format in self.export_formats

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analytics": self.analytics.value,
            "api_access": self.api_access,
            "bulk_operations": self.bulk_operations,
            "custom_branding": self.custom_branding,
            "export_formats": [fmt.value for fmt in ExportFormat if fmt in self.export_formats],
            "pdf_export": self.exports(ExportFormat.PDF),
            "csv_export": self.exports(ExportFormat.CSV),
            "excel_export": self.exports(ExportFormat.EXCEL),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureSet":
        return cls(
            analytics=AnalyticsLevel(data["analytics"]),
            export_formats=frozenset(ExportFormat(f) for f in data["export_formats"]),
            api_access=bool(data["api_access"]),
            bulk_operations=bool(data["bulk_operations"]),
            custom_branding=bool(data["custom_branding"]),
        )


@dataclass(frozen=True)
class Entitlements:
    """
    Computed entitlements for one tenant.

    Produced by EntitlementsComputer, cached wholesale by EntitlementCache.
    `cached` is set by the service on the value it returns, never stored.

    limits and resources are read-only mappings: a cache hit shares them
    with the cached entry.
    """

    tenant_id: str
    tier: Tier
    status: SubscriptionStatus
    subscription_active: bool
    limits: Mapping[Resource, int]
    features: FeatureSet
    usage: UsageSnapshot
    resources: Mapping[Resource, ResourceUsage]
    cached_at: datetime
    ttl_seconds: int
    cached: bool = field(default=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))
        object.__setattr__(self, "resources", MappingProxyType(dict(self.resources)))

    def limit_for(self, resource: Union[Resource, str]) -> int:
        return self.limits[Resource(resource)]

    def resource(self, resource: Union[Resource, str]) -> ResourceUsage:
        return self.resources[Resource(resource)]

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.cached_at).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) > self.ttl_seconds

    def ttl_remaining(self, now: Optional[datetime] = None) -> int:
        return max(0, int(self.ttl_seconds - self.age_seconds(now)))

    def with_cached(self, cached: bool) -> "Entitlements":
        return replace(self, cached=cached)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Response shape of GET /api/v1/entitlements."""
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "subscription_active": self.subscription_active,
            "limits": {resource.value: limit for resource, limit in self.limits.items()},
            "features": self.features.to_dict(),
            "usage": self.usage.to_dict(),
            "resources": {
                resource.value: usage.to_dict() for resource, usage in self.resources.items()
            },
            "cached": self.cached,
            "ttl": self.ttl_remaining(now),
            "cached_at": self.cached_at.isoformat(),
        }

    def to_json(self) -> str:
        """Serialize for the shared cache backend."""
        return json.dumps({
            "tenant_id": self.tenant_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "subscription_active": self.subscription_active,
            "limits": {resource.value: limit for resource, limit in self.limits.items()},
            "features": self.features.to_dict(),
            "usage": self.usage.to_dict(),
            "cached_at": self.cached_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        })

    @classmethod
    def from_json(cls, data: str) -> "Entitlements":
        """Deserialize a cache entry. Derived resource flags are recomputed."""
        payload = json.loads(data)
        limits = {Resource(key): int(value) for key, value in payload["limits"].items()}
        usage = UsageSnapshot.from_dict(payload["usage"])
        return cls(
            tenant_id=payload["tenant_id"],
            tier=Tier.parse(payload["tier"]),
            status=SubscriptionStatus.parse(payload["status"]),
            subscription_active=bool(payload["subscription_active"]),
            limits=limits,
            features=FeatureSet.from_dict(payload["features"]),
            usage=usage,
            resources={
                resource: ResourceUsage.compute(resource, limit, usage.count_for(resource))
                for resource, limit in limits.items()
            },
            cached_at=datetime.fromisoformat(payload["cached_at"]),
            ttl_seconds=int(payload["ttl_seconds"]),
        )


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a gate check. A denial is a normal result, not an error."""

    allowed: bool
    current_tier: Tier
    reason: Optional[str] = None
    code: Optional[DenialCode] = None
    required_tier: Optional[Tier] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    action: Optional[str] = None

    @classmethod
    def allow(
        cls,
        current_tier: Tier,
        action: Optional[str] = None,
        limit: Optional[int] = None,
        current: Optional[int] = None,
    ) -> "GateDecision":
        return cls(allowed=True, current_tier=current_tier, action=action, limit=limit, current=current)

    def to_dict(self) -> Dict[str, Any]:
        """Snake-case shape returned by the check endpoint."""
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "code": self.code.value if self.code else None,
            "current_tier": self.current_tier.value,
            "required_tier": self.required_tier.value if self.required_tier else None,
            "limit": self.limit,
            "current": self.current,
            "action": self.action,
        }

    def to_error_response(self) -> Dict[str, Any]:
        """403 body: enough for a client to render an upgrade prompt."""
        body: Dict[str, Any] = {
            "error": self.reason,
            "code": self.code.value if self.code else None,
            "currentTier": self.current_tier.value,
        }
        if self.required_tier is not None:
            body["requiredTier"] = self.required_tier.value
        if self.limit is not None:
            body["limit"] = self.limit
        if self.current is not None:
            body["current"] = self.current
        return body
