"""
External collaborators consumed by EntitlementsService.

Provides:
- SubscriptionProvider: tenant_id → SubscriptionRecord | None
- UsageSnapshotProvider: tenant_id → UsageSnapshot
- Database-backed implementations over trainer_subscriptions and
  tier_usage_tracking

Providers may fail or hang; the service bounds every fetch with a timeout
and maps failures to retryable errors. Providers must not swallow errors.
"""

import logging
from abc import ABC, abstractmethod
from datetime import timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from evofit.database.session import get_session_factory
from evofit.entitlements.models import SubscriptionRecord, UsageSnapshot
from evofit.entitlements.tiers import SubscriptionStatus, Tier

logger = logging.getLogger(__name__)


class SubscriptionProvider(ABC):
    """Supplies the tenant's current subscription."""

    @abstractmethod
    async def fetch(self, tenant_id: str) -> Optional[SubscriptionRecord]:
        """
        Fetch the subscription for a tenant.

        Returns:
            SubscriptionRecord, or None when the tenant has no subscription

        Raises:
            UnknownTierError: stored tier is not a catalog tier
        """
        pass


class UsageSnapshotProvider(ABC):
    """Supplies the tenant's current resource counts. Read-only."""

    @abstractmethod
    async def fetch(self, tenant_id: str) -> UsageSnapshot:
        pass


class _DatabaseProvider:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _open_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()


class DatabaseSubscriptionProvider(_DatabaseProvider, SubscriptionProvider):
    """Reads trainer_subscriptions. Queries run in the threadpool."""

    async def fetch(self, tenant_id: str) -> Optional[SubscriptionRecord]:
        return await run_in_threadpool(self._fetch_sync, tenant_id)

    def _fetch_sync(self, tenant_id: str) -> Optional[SubscriptionRecord]:
        from evofit.models.subscription import TrainerSubscription

        session = self._open_session()
        try:
            row = (
                session.query(TrainerSubscription)
                .filter(TrainerSubscription.tenant_id == tenant_id)
                .first()
            )
            if row is None:
                logger.debug("No subscription found", extra={"tenant_id": tenant_id})
                return None

            period_end = row.current_period_end
            # SQLite drops tzinfo; stored values are UTC
            if period_end is not None and period_end.tzinfo is None:
                period_end = period_end.replace(tzinfo=timezone.utc)

            return SubscriptionRecord(
                tenant_id=tenant_id,
                tier=Tier.parse(row.tier),
                status=SubscriptionStatus.parse(row.status),
                current_period_end=period_end,
            )
        finally:
            session.close()


class DatabaseUsageProvider(_DatabaseProvider, UsageSnapshotProvider):
    """Reads tier_usage_tracking. A tenant with no row has zero usage."""

    async def fetch(self, tenant_id: str) -> UsageSnapshot:
        return await run_in_threadpool(self._fetch_sync, tenant_id)

    def _fetch_sync(self, tenant_id: str) -> UsageSnapshot:
        from evofit.models.usage import TierUsageTracking

        session = self._open_session()
        try:
            row = (
                session.query(TierUsageTracking)
                .filter(TierUsageTracking.tenant_id == tenant_id)
                .first()
            )
            if row is None:
                return UsageSnapshot()
            return UsageSnapshot(
                customer_count=row.customers_count or 0,
                meal_plan_count=row.meal_plans_count or 0,
                ai_generation_count=row.ai_generations_count or 0,
            )
        finally:
            session.close()
