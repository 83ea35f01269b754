"""
Tests for EntitlementsComputer and the entitlement value objects.
"""

from datetime import timedelta

import pytest

from evofit.entitlements.computer import EntitlementsComputer, get_cache_ttl_seconds
from evofit.entitlements.errors import UnknownTierError
from evofit.entitlements.models import (
    Entitlements,
    GateDecision,
    DenialCode,
    ResourceUsage,
    SubscriptionRecord,
    UsageSnapshot,
)
from evofit.entitlements.tiers import (
    AnalyticsLevel,
    ExportFormat,
    Resource,
    SubscriptionStatus,
    Tier,
    UNLIMITED,
)

from conftest import FIXED_NOW


class TestCompute:

    def test_limits_copied_from_tier(self, make_entitlements):
        entitlements = make_entitlements(Tier.PROFESSIONAL)
        assert entitlements.limit_for(Resource.CUSTOMERS) == 20
        assert entitlements.limit_for("meal_plans") == 2500
        assert entitlements.limit_for(Resource.AI_GENERATIONS) == 500

    def test_features_copied_from_tier(self, make_entitlements):
        features = make_entitlements(Tier.ENTERPRISE).features
        assert features.analytics == AnalyticsLevel.ADVANCED
        assert features.exports(ExportFormat.EXCEL)
        assert features.api_access
        assert features.bulk_operations
        assert features.custom_branding

    def test_enterprise_unlimited_customers_never_near_limit(self, make_entitlements):
        entitlements = make_entitlements(Tier.ENTERPRISE, customers=1000)
        usage = entitlements.resource(Resource.CUSTOMERS)
        assert usage.limit == UNLIMITED
        assert usage.unlimited
        assert not usage.at_limit
        assert not usage.near_limit
        assert usage.percentage == 0

    def test_starter_at_customer_limit(self, make_entitlements):
        usage = make_entitlements(Tier.STARTER, customers=9).resource(Resource.CUSTOMERS)
        assert usage.at_limit
        assert usage.near_limit
        assert usage.percentage == 100

    def test_starter_near_customer_limit(self, make_entitlements):
        # 8 of 9 is 88%: near but not at
        usage = make_entitlements(Tier.STARTER, customers=8).resource(Resource.CUSTOMERS)
        assert not usage.at_limit
        assert usage.near_limit
        assert usage.percentage == 89

    def test_below_near_threshold(self, make_entitlements):
        usage = make_entitlements(Tier.PROFESSIONAL, customers=15).resource(Resource.CUSTOMERS)
        assert not usage.near_limit
        assert usage.percentage == 75

    def test_over_limit_percentage_is_capped(self, make_entitlements):
        # Usage can exceed a limit after a downgrade
        usage = make_entitlements(Tier.STARTER, customers=20).resource(Resource.CUSTOMERS)
        assert usage.at_limit
        assert usage.percentage == 100

    def test_cached_at_and_ttl(self, make_entitlements):
        entitlements = make_entitlements()
        assert entitlements.cached_at == FIXED_NOW
        assert entitlements.ttl_seconds == 300
        assert entitlements.cached is False

    def test_status_drives_subscription_active(self, make_entitlements):
        assert make_entitlements(status=SubscriptionStatus.TRIALING).subscription_active
        assert not make_entitlements(status=SubscriptionStatus.UNPAID).subscription_active

    def test_explicit_subscription_active_wins(self, make_entitlements):
        entitlements = make_entitlements(
            status=SubscriptionStatus.CANCELED, subscription_active=True,
        )
        assert entitlements.subscription_active

    def test_unknown_tier(self, computer):
        with pytest.raises(UnknownTierError):
            computer.compute("diamond", UsageSnapshot())

    def test_compute_is_deterministic(self, make_entitlements):
        assert make_entitlements(Tier.PROFESSIONAL, customers=3) == \
            make_entitlements(Tier.PROFESSIONAL, customers=3)

    def test_ttl_from_environment(self, monkeypatch, catalog):
        monkeypatch.setenv("ENTITLEMENT_CACHE_TTL", "60")
        assert get_cache_ttl_seconds() == 60
        assert EntitlementsComputer(catalog).ttl_seconds == 60

    def test_ttl_capped_at_access_end(self, computer):
        entitlements = computer.compute(
            Tier.PROFESSIONAL,
            UsageSnapshot(),
            status=SubscriptionStatus.CANCELED,
            subscription_active=True,
            access_ends_at=FIXED_NOW + timedelta(seconds=90),
        )
        assert entitlements.ttl_seconds == 90

    def test_distant_access_end_keeps_default_ttl(self, computer):
        entitlements = computer.compute(
            Tier.PROFESSIONAL,
            UsageSnapshot(),
            status=SubscriptionStatus.CANCELED,
            subscription_active=True,
            access_ends_at=FIXED_NOW + timedelta(days=3),
        )
        assert entitlements.ttl_seconds == 300

    def test_limits_are_read_only(self, make_entitlements):
        entitlements = make_entitlements()
        with pytest.raises(TypeError):
            entitlements.limits[Resource.CUSTOMERS] = UNLIMITED
        with pytest.raises(TypeError):
            entitlements.resources[Resource.CUSTOMERS] = None
        assert entitlements.limit_for(Resource.CUSTOMERS) == 9


class TestResourceUsage:

    def test_zero_limit(self):
        usage = ResourceUsage.compute(Resource.CUSTOMERS, 0, 0)
        assert usage.at_limit
        assert usage.percentage == 100

    def test_to_dict(self):
        usage = ResourceUsage.compute(Resource.MEAL_PLANS, 1000, 250)
        assert usage.to_dict() == {
            "max": 1000,
            "used": 250,
            "percentage": 25,
            "at_limit": False,
            "near_limit": False,
        }


class TestUsageSnapshot:

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError):
            UsageSnapshot(customer_count=-1)

    def test_count_for(self):
        snapshot = UsageSnapshot(customer_count=1, meal_plan_count=2, ai_generation_count=3)
        assert snapshot.count_for("customers") == 1
        assert snapshot.count_for(Resource.MEAL_PLANS) == 2
        assert snapshot.count_for(Resource.AI_GENERATIONS) == 3

    def test_from_dict_defaults_missing_to_zero(self):
        assert UsageSnapshot.from_dict({"customers": 4}) == UsageSnapshot(customer_count=4)


class TestSubscriptionRecord:

    def test_canceled_keeps_access_until_period_end(self):
        record = SubscriptionRecord(
            tenant_id="trainer_123",
            tier=Tier.PROFESSIONAL,
            status=SubscriptionStatus.CANCELED,
            current_period_end=FIXED_NOW + timedelta(days=3),
        )
        assert record.grants_access(FIXED_NOW)
        assert not record.grants_access(FIXED_NOW + timedelta(days=4))

    def test_canceled_without_period_end(self):
        record = SubscriptionRecord("trainer_123", Tier.PROFESSIONAL, SubscriptionStatus.CANCELED)
        assert not record.grants_access(FIXED_NOW)

    def test_none_record(self):
        record = SubscriptionRecord.none("trainer_123")
        assert record.tier == Tier.STARTER
        assert record.status == SubscriptionStatus.NONE
        assert not record.grants_access(FIXED_NOW)

    def test_access_ends_at_only_when_canceled(self):
        period_end = FIXED_NOW + timedelta(days=3)
        canceled = SubscriptionRecord(
            "trainer_123", Tier.PROFESSIONAL, SubscriptionStatus.CANCELED, period_end,
        )
        active = SubscriptionRecord(
            "trainer_123", Tier.PROFESSIONAL, SubscriptionStatus.ACTIVE, period_end,
        )
        assert canceled.access_ends_at == period_end
        assert active.access_ends_at is None


class TestSerialization:

    def test_to_dict_shape(self, make_entitlements):
        payload = make_entitlements(Tier.PROFESSIONAL, customers=16).to_dict(now=FIXED_NOW)

        assert payload["tier"] == "professional"
        assert payload["status"] == "active"
        assert payload["subscription_active"] is True
        assert payload["limits"] == {"customers": 20, "meal_plans": 2500, "ai_generations": 500}
        assert payload["features"]["csv_export"] is True
        assert payload["features"]["excel_export"] is False
        assert payload["features"]["export_formats"] == ["pdf", "csv"]
        assert payload["usage"]["customers"] == 16
        assert payload["resources"]["customers"]["near_limit"] is True
        assert payload["cached"] is False
        assert payload["ttl"] == 300
        assert payload["cached_at"] == FIXED_NOW.isoformat()

    def test_json_round_trip_recomputes_resources(self, make_entitlements):
        original = make_entitlements(Tier.STARTER, customers=9, ai_generations=50)
        restored = Entitlements.from_json(original.to_json())
        assert restored == original
        assert restored.resource(Resource.CUSTOMERS).at_limit
        with pytest.raises(TypeError):
            restored.limits[Resource.CUSTOMERS] = UNLIMITED

    def test_expiry(self, make_entitlements):
        entitlements = make_entitlements()
        assert not entitlements.is_expired(FIXED_NOW + timedelta(seconds=300))
        assert entitlements.is_expired(FIXED_NOW + timedelta(seconds=301))
        assert entitlements.ttl_remaining(FIXED_NOW + timedelta(seconds=100)) == 200


class TestGateDecisionShapes:

    def test_error_response_omits_missing_fields(self):
        decision = GateDecision(
            allowed=False,
            current_tier=Tier.STARTER,
            reason="No active subscription",
            code=DenialCode.SUBSCRIPTION_INACTIVE,
        )
        assert decision.to_error_response() == {
            "error": "No active subscription",
            "code": "subscription_inactive",
            "currentTier": "starter",
        }

    def test_allow_to_dict(self):
        decision = GateDecision.allow(Tier.ENTERPRISE, action="api_access")
        assert decision.to_dict()["allowed"] is True
        assert decision.to_dict()["current_tier"] == "enterprise"
        assert decision.to_dict()["code"] is None
