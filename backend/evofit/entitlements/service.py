"""
Entitlements Service: single entry point for all entitlement operations.

Provides:
- get_entitlements(tenant_id) → Entitlements (cache-or-compute)
- check_feature / check_quantity / check_all → GateDecision
- invalidate(tenant_id, reason) / invalidate_all(reason)

Architecture:
- Fail-CLOSED: a provider failure or timeout raises a retryable
  ProviderUnavailableError; it never becomes an allow or a deny
- Concurrent misses for one tenant may both recompute; last put wins
- A miss in flight across invalidate() returns its result but does not
  cache it
- Cache hits do no I/O

CRITICAL: Route handlers use this service. Do NOT call the cache, computer
or providers directly for tenant-scoped lookups.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from evofit.entitlements.cache import EntitlementCache, get_entitlement_cache
from evofit.entitlements.computer import EntitlementsComputer
from evofit.entitlements.errors import (
    DEFAULT_RETRY_AFTER_SECONDS,
    EntitlementError,
    SubscriptionProviderUnavailable,
    UsageProviderUnavailable,
)
from evofit.entitlements.gate import (
    FeatureRequirement,
    GateEnforcer,
    QuantityRequirement,
    Requirement,
)
from evofit.entitlements.loader import TierCatalog, get_tier_catalog
from evofit.entitlements.models import (
    Entitlements,
    GateDecision,
    SubscriptionRecord,
    UsageSnapshot,
    utcnow,
)
from evofit.entitlements.providers import SubscriptionProvider, UsageSnapshotProvider
from evofit.entitlements.tiers import Resource

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 2.0


def get_fetch_timeout_seconds() -> float:
    return float(os.getenv("ENTITLEMENT_FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS))


def get_retry_after_seconds() -> int:
    return int(os.getenv("ENTITLEMENT_RETRY_AFTER_SECONDS", DEFAULT_RETRY_AFTER_SECONDS))


class EntitlementsService:
    """
    Central entitlements service.

    One instance per process; holds only injected collaborators.
    """

    def __init__(
        self,
        subscription_provider: SubscriptionProvider,
        usage_provider: UsageSnapshotProvider,
        cache: Optional[EntitlementCache] = None,
        catalog: Optional[TierCatalog] = None,
        computer: Optional[EntitlementsComputer] = None,
        fetch_timeout_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._subscription_provider = subscription_provider
        self._usage_provider = usage_provider
        self._cache = cache or get_entitlement_cache()
        self._catalog = catalog or get_tier_catalog()
        self._clock = clock or utcnow
        self._computer = computer or EntitlementsComputer(self._catalog, clock=self._clock)
        self._gate = GateEnforcer(self._catalog)
        if fetch_timeout_seconds is None:
            fetch_timeout_seconds = get_fetch_timeout_seconds()
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._retry_after_seconds = get_retry_after_seconds()

    @property
    def gate(self) -> GateEnforcer:
        return self._gate

    @property
    def catalog(self) -> TierCatalog:
        return self._catalog

    def now(self) -> datetime:
        """Current time on the service clock (TTL reporting uses it)."""
        return self._clock()

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def get_entitlements(self, tenant_id: str) -> Entitlements:
        """
        Resolve the current entitlements for a tenant.

        1. Check cache → return on hit (cached=True)
        2. Fetch subscription and usage snapshot (each bounded by a timeout)
        3. Compute, cache, return (cached=False)

        Raises:
            ProviderUnavailableError: a provider failed or timed out (retryable)
            UnknownTierError: stored subscription names no known tier (fatal)
            UnknownStatusError: stored subscription has an unknown status (fatal)
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached.with_cached(True)

        # Taken before fetching: an invalidation during the fetch voids the put
        generation = self._cache.generation(tenant_id)

        subscription = await self._fetch_subscription(tenant_id)
        usage = await self._fetch_usage(tenant_id)

        entitlements = self._computer.compute(
            subscription.tier,
            usage,
            tenant_id=tenant_id,
            status=subscription.status,
            subscription_active=subscription.grants_access(self._clock()),
            access_ends_at=subscription.access_ends_at,
        )

        if not self._cache.put(tenant_id, entitlements, generation=generation):
            logger.info("Entitlements not cached", extra={"tenant_id": tenant_id})

        logger.info("Entitlements computed", extra={
            "tenant_id": tenant_id,
            "tier": entitlements.tier.value,
            "status": entitlements.status.value,
        })
        return entitlements.with_cached(False)

    async def check_feature(
        self,
        tenant_id: str,
        feature: Union[FeatureRequirement, str],
        required_level: Optional[str] = None,
    ) -> GateDecision:
        """Check a feature gate (e.g. "export.excel") for a tenant."""
        if isinstance(feature, str):
            feature = FeatureRequirement.parse(feature, required_level)
        entitlements = await self.get_entitlements(tenant_id)
        return self._gate.check_feature(entitlements, feature)

    async def check_quantity(
        self,
        tenant_id: str,
        resource: Union[Resource, str],
        delta: int = 1,
        current: Optional[int] = None,
    ) -> GateDecision:
        """
        Check a quantity gate ("add `delta` of `resource`") for a tenant.

        Pass `current` when the caller holds a live count; otherwise the
        snapshot count is used.
        """
        requirement = QuantityRequirement(Resource(resource), delta, current)
        entitlements = await self.get_entitlements(tenant_id)
        return self._gate.check_quantity(entitlements, requirement)

    async def check_all(
        self,
        tenant_id: str,
        requirements: Iterable[Requirement],
    ) -> GateDecision:
        """AND of several requirements against one entitlements value."""
        requirements = list(requirements)
        entitlements = await self.get_entitlements(tenant_id)
        return self._gate.check_all(entitlements, requirements)

    # ------------------------------------------------------------------
    # Cache invalidation
    # ------------------------------------------------------------------

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        """
        Invalidate cached entitlements for a tenant.

        Call this whenever a subscription changes tier or status.
        """
        deleted = self._cache.invalidate(tenant_id, reason)
        logger.info("Entitlements invalidated", extra={
            "tenant_id": tenant_id,
            "reason": reason,
            "cache_deleted": deleted,
        })
        return deleted

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """Flush every cached entitlement (e.g. after a tier catalog change)."""
        return self._cache.invalidate_all(reason)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _fetch_subscription(self, tenant_id: str) -> SubscriptionRecord:
        record = await self._call_provider(
            tenant_id,
            self._subscription_provider.fetch(tenant_id),
            SubscriptionProviderUnavailable,
            "subscription",
        )
        if record is None:
            return SubscriptionRecord.none(tenant_id)
        return record

    async def _fetch_usage(self, tenant_id: str) -> UsageSnapshot:
        usage = await self._call_provider(
            tenant_id,
            self._usage_provider.fetch(tenant_id),
            UsageProviderUnavailable,
            "usage snapshot",
        )
        return usage if usage is not None else UsageSnapshot()

    async def _call_provider(self, tenant_id, awaitable, error_class, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._fetch_timeout_seconds)
        except asyncio.TimeoutError as exc:
            detail = f"{what} fetch timed out after {self._fetch_timeout_seconds}s"
            self._emit_provider_alert(tenant_id, detail, exc)
            raise error_class(
                tenant_id, detail, cause=exc, retry_after_seconds=self._retry_after_seconds,
            ) from exc
        except EntitlementError:
            raise
        except Exception as exc:
            detail = f"{what} fetch failed"
            self._emit_provider_alert(tenant_id, detail, exc)
            raise error_class(
                tenant_id, detail, cause=exc, retry_after_seconds=self._retry_after_seconds,
            ) from exc

    @staticmethod
    def _emit_provider_alert(tenant_id: str, detail: str, exc: Exception) -> None:
        logger.error(
            "Entitlements provider unavailable",
            extra={
                "alert_type": "entitlements_provider_unavailable",
                "tenant_id": tenant_id,
                "detail": detail,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
