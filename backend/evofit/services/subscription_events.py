"""
Subscription change notifications.

The billing webhook collaborator calls into this module after it has
processed a payment-provider event. Every committed tier or status change
invalidates the tenant's cached entitlements before the call returns, so
the next request is computed against the new subscription.

CRITICAL: Invalidate AFTER the commit. Invalidating first lets a concurrent
request re-cache the old subscription.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from evofit.entitlements.loader import TierCatalog
from evofit.entitlements.service import EntitlementsService
from evofit.entitlements.tiers import SubscriptionStatus, Tier
from evofit.models.subscription import TrainerSubscription

logger = logging.getLogger(__name__)


class ChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    STATUS_CHANGE = "status_change"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class SubscriptionChange:
    """What changed, as logged and returned to the caller."""

    tenant_id: str
    direction: ChangeDirection
    old_tier: Optional[Tier]
    new_tier: Optional[Tier]
    old_status: Optional[SubscriptionStatus]
    new_status: Optional[SubscriptionStatus]
    features_lost: List[str]
    cache_invalidated: bool

    @property
    def reason(self) -> str:
        return _change_reason(self.old_tier, self.new_tier, self.old_status, self.new_status)


def _change_reason(old_tier, new_tier, old_status, new_status) -> str:
    def _v(value):
        return value.value if value is not None else "none"
    return (
        f"subscription_change:{_v(old_tier)}->{_v(new_tier)}"
        f":{_v(old_status)}->{_v(new_status)}"
    )


class SubscriptionChangeNotifier:
    """
    Invalidates cached entitlements when a subscription changes.

    Usage:
        notifier = SubscriptionChangeNotifier(entitlements_service)

        # after the webhook handler has committed the new subscription row
        notifier.on_subscription_changed(
            tenant_id, old_tier="starter", new_tier="professional",
            old_status="active", new_status="active",
        )
    """

    def __init__(
        self,
        service: EntitlementsService,
        catalog: Optional[TierCatalog] = None,
    ):
        self._service = service
        self._catalog = catalog or service.catalog

    def on_subscription_changed(
        self,
        tenant_id: str,
        old_tier: Optional[Union[Tier, str]] = None,
        new_tier: Optional[Union[Tier, str]] = None,
        old_status: Optional[Union[SubscriptionStatus, str]] = None,
        new_status: Optional[Union[SubscriptionStatus, str]] = None,
    ) -> SubscriptionChange:
        """
        Handle a committed subscription change.

        Always invalidates, even when nothing appears to have changed: the
        caller's view of the old values may itself be stale.

        Raises:
            UnknownTierError: a tier value names no catalog tier
            EntitlementCacheError: the invalidation could not be applied
        """
        old_tier = Tier.parse(old_tier) if old_tier is not None else None
        new_tier = Tier.parse(new_tier) if new_tier is not None else None
        old_status = SubscriptionStatus.parse(old_status) if old_status is not None else None
        new_status = SubscriptionStatus.parse(new_status) if new_status is not None else None

        direction = ChangeDirection.UNCHANGED
        features_lost: List[str] = []
        if old_tier is not None and new_tier is not None and old_tier != new_tier:
            if self._catalog.is_upgrade(old_tier, new_tier):
                direction = ChangeDirection.UPGRADE
            else:
                direction = ChangeDirection.DOWNGRADE
                features_lost = self._catalog.features_lost_on_downgrade(old_tier, new_tier)
        elif old_status != new_status:
            direction = ChangeDirection.STATUS_CHANGE

        reason = _change_reason(old_tier, new_tier, old_status, new_status)
        deleted = self._service.invalidate(tenant_id, reason=reason)

        logger.info(
            "Subscription change - entitlements invalidated",
            extra={
                "tenant_id": tenant_id,
                "direction": direction.value,
                "old_tier": old_tier.value if old_tier else None,
                "new_tier": new_tier.value if new_tier else None,
                "old_status": old_status.value if old_status else None,
                "new_status": new_status.value if new_status else None,
                "features_lost": features_lost,
            },
        )

        return SubscriptionChange(
            tenant_id=tenant_id,
            direction=direction,
            old_tier=old_tier,
            new_tier=new_tier,
            old_status=old_status,
            new_status=new_status,
            features_lost=features_lost,
            cache_invalidated=deleted,
        )

    def commit_change(
        self,
        session: Session,
        tenant_id: str,
        tier: Union[Tier, str],
        status: Union[SubscriptionStatus, str],
        current_period_end: Optional[datetime] = None,
    ) -> SubscriptionChange:
        """
        Persist a tenant's new tier/status, commit, then invalidate.

        Creates the subscription row if the tenant has none.
        """
        tier = Tier.parse(tier)
        status = SubscriptionStatus.parse(status)

        row = (
            session.query(TrainerSubscription)
            .filter(TrainerSubscription.tenant_id == tenant_id)
            .first()
        )
        if row is None:
            old_tier, old_status = None, SubscriptionStatus.NONE
            row = TrainerSubscription(tenant_id=tenant_id)
            session.add(row)
        else:
            old_tier, old_status = Tier.parse(row.tier), SubscriptionStatus.parse(row.status)

        row.tier = tier.value
        row.status = status.value
        row.current_period_end = current_period_end
        session.commit()

        return self.on_subscription_changed(
            tenant_id,
            old_tier=old_tier,
            new_tier=tier,
            old_status=old_status,
            new_status=status,
        )
