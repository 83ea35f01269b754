"""
Tests for SubscriptionChangeNotifier.

A committed tier or status change must invalidate cached entitlements so
the next lookup reflects the new subscription.
"""

from unittest.mock import MagicMock

import pytest

from evofit.entitlements.errors import EntitlementCacheError, UnknownTierError
from evofit.entitlements.providers import DatabaseSubscriptionProvider, DatabaseUsageProvider
from evofit.entitlements.service import EntitlementsService
from evofit.entitlements.tiers import Resource, SubscriptionStatus, Tier
from evofit.models.subscription import TrainerSubscription
from evofit.services.subscription_events import ChangeDirection, SubscriptionChangeNotifier


@pytest.fixture
def notifier(service):
    return SubscriptionChangeNotifier(service)


class TestOnSubscriptionChanged:

    @pytest.mark.asyncio
    async def test_upgrade_invalidates(self, notifier, service):
        await service.get_entitlements("trainer_123")

        change = notifier.on_subscription_changed(
            "trainer_123",
            old_tier="starter",
            new_tier="professional",
            old_status="active",
            new_status="active",
        )

        assert change.direction == ChangeDirection.UPGRADE
        assert change.cache_invalidated is True
        assert change.features_lost == []
        assert change.reason == "subscription_change:starter->professional:active->active"

    def test_downgrade_lists_lost_features(self, notifier):
        change = notifier.on_subscription_changed(
            "trainer_123", old_tier=Tier.ENTERPRISE, new_tier=Tier.STARTER,
        )

        assert change.direction == ChangeDirection.DOWNGRADE
        assert "export.excel" in change.features_lost
        assert "bulk_operations" in change.features_lost
        assert "export.pdf" not in change.features_lost

    def test_status_change(self, notifier):
        change = notifier.on_subscription_changed(
            "trainer_123",
            old_tier="professional",
            new_tier="professional",
            old_status="active",
            new_status="canceled",
        )
        assert change.direction == ChangeDirection.STATUS_CHANGE
        assert change.new_status == SubscriptionStatus.CANCELED

    def test_unchanged_still_invalidates(self):
        service = MagicMock(spec=EntitlementsService)
        service.invalidate.return_value = False

        change = SubscriptionChangeNotifier(service, catalog=MagicMock()).on_subscription_changed(
            "trainer_123", old_tier="starter", new_tier="starter",
        )

        assert change.direction == ChangeDirection.UNCHANGED
        service.invalidate.assert_called_once()
        assert service.invalidate.call_args.args[0] == "trainer_123"

    def test_unknown_tier(self, notifier):
        with pytest.raises(UnknownTierError):
            notifier.on_subscription_changed("trainer_123", old_tier="starter", new_tier="gold")

    def test_invalidation_failure_propagates(self, catalog):
        service = MagicMock(spec=EntitlementsService)
        service.invalidate.side_effect = EntitlementCacheError("redis down")

        with pytest.raises(EntitlementCacheError):
            SubscriptionChangeNotifier(service, catalog=catalog).on_subscription_changed(
                "trainer_123", old_tier="starter", new_tier="enterprise",
            )


class TestCommitChange:

    @pytest.mark.asyncio
    async def test_commit_then_next_lookup_sees_new_tier(
        self, db_session_factory, db_session, memory_cache, catalog, clock,
    ):
        service = EntitlementsService(
            subscription_provider=DatabaseSubscriptionProvider(db_session_factory),
            usage_provider=DatabaseUsageProvider(db_session_factory),
            cache=memory_cache,
            catalog=catalog,
            clock=clock,
        )
        notifier = SubscriptionChangeNotifier(service)

        notifier.commit_change(db_session, "trainer_123", "starter", "active")
        before = await service.get_entitlements("trainer_123")
        assert before.limit_for(Resource.CUSTOMERS) == 9

        change = notifier.commit_change(db_session, "trainer_123", Tier.ENTERPRISE, "active")
        after = await service.get_entitlements("trainer_123")

        assert change.direction == ChangeDirection.UPGRADE
        assert change.cache_invalidated is True
        assert after.cached is False
        assert after.tier == Tier.ENTERPRISE
        assert after.limit_for(Resource.CUSTOMERS) == -1

    def test_creates_row_for_new_tenant(self, db_session, notifier):
        change = notifier.commit_change(db_session, "trainer_new", "professional", "trialing")

        row = db_session.query(TrainerSubscription).filter_by(tenant_id="trainer_new").one()
        assert row.tier == "professional"
        assert row.status == "trialing"
        assert change.old_tier is None
        assert change.old_status == SubscriptionStatus.NONE
        assert change.direction == ChangeDirection.STATUS_CHANGE
