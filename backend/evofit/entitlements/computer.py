"""
Entitlements computer: tier + usage -> Entitlements.

Pure apart from reading the clock for cached_at. Safe to call concurrently;
it performs no shared mutation.
"""

import logging
import os
from datetime import datetime
from typing import Callable, Optional, Union

from evofit.entitlements.loader import TierCatalog, get_tier_catalog
from evofit.entitlements.models import (
    Entitlements,
    FeatureSet,
    ResourceUsage,
    UsageSnapshot,
    utcnow,
)
from evofit.entitlements.tiers import Resource, SubscriptionStatus, Tier

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes


def get_cache_ttl_seconds() -> int:
    """Entitlement TTL from ENTITLEMENT_CACHE_TTL (seconds)."""
    return int(os.getenv("ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS))


class EntitlementsComputer:
    """
    Builds immutable Entitlements from a tier and a usage snapshot.

    Limits and feature flags are copied verbatim from the tier definition;
    per-resource at/near-limit flags are derived from the snapshot.
    """

    def __init__(
        self,
        catalog: Optional[TierCatalog] = None,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._catalog = catalog or get_tier_catalog()
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else get_cache_ttl_seconds()
        self._clock = clock or utcnow

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def compute(
        self,
        tier: Union[Tier, str],
        usage: UsageSnapshot,
        tenant_id: str = "",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        subscription_active: Optional[bool] = None,
        access_ends_at: Optional[datetime] = None,
    ) -> Entitlements:
        """
        Compute entitlements for a tier.

        Args:
            tier: Tier (strings are parsed, unknown values raise UnknownTierError)
            usage: Current usage snapshot
            tenant_id: Tenant the result belongs to
            status: Billing status echoed into the result
            subscription_active: Whether gated actions are open; defaults to
                what the status alone implies
            access_ends_at: When access lapses (canceled subscriptions); the
                TTL never outlives it

        Returns:
            Entitlements with cached_at set to now
        """
        definition = self._catalog.definition_for(tier)
        if subscription_active is None:
            subscription_active = status.grants_access

        limits = definition.limits()
        resources = {
            resource: ResourceUsage.compute(resource, limits[resource], usage.count_for(resource))
            for resource in Resource
        }

        now = self._clock()
        ttl_seconds = self._ttl_seconds
        if subscription_active and access_ends_at is not None:
            ttl_seconds = min(ttl_seconds, max(0, int((access_ends_at - now).total_seconds())))

        logger.debug("Computed entitlements", extra={
            "tenant_id": tenant_id,
            "tier": definition.tier.value,
            "status": status.value,
        })

        return Entitlements(
            tenant_id=tenant_id,
            tier=definition.tier,
            status=status,
            subscription_active=subscription_active,
            limits=limits,
            features=FeatureSet.from_definition(definition),
            usage=usage,
            resources=resources,
            cached_at=now,
            ttl_seconds=ttl_seconds,
        )
