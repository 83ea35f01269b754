"""
Tests for the database-backed subscription and usage providers.

Uses the SQLite session factory from conftest.
"""

from datetime import datetime, timezone

import pytest

from evofit.entitlements.errors import UnknownStatusError, UnknownTierError
from evofit.entitlements.models import UsageSnapshot
from evofit.entitlements.providers import DatabaseSubscriptionProvider, DatabaseUsageProvider
from evofit.entitlements.tiers import SubscriptionStatus, Tier
from evofit.models.subscription import TrainerSubscription
from evofit.models.usage import TierUsageTracking


class TestDatabaseSubscriptionProvider:

    @pytest.mark.asyncio
    async def test_no_row_returns_none(self, db_session_factory):
        provider = DatabaseSubscriptionProvider(db_session_factory)
        assert await provider.fetch("trainer_123") is None

    @pytest.mark.asyncio
    async def test_reads_subscription(self, db_session_factory, db_session):
        period_end = datetime(2026, 4, 1, tzinfo=timezone.utc)
        db_session.add(TrainerSubscription(
            tenant_id="trainer_123",
            tier="professional",
            status="trialing",
            current_period_end=period_end,
        ))
        db_session.commit()

        record = await DatabaseSubscriptionProvider(db_session_factory).fetch("trainer_123")

        assert record.tenant_id == "trainer_123"
        assert record.tier == Tier.PROFESSIONAL
        assert record.status == SubscriptionStatus.TRIALING
        assert record.current_period_end == period_end
        assert record.current_period_end.tzinfo is not None

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, db_session_factory, db_session):
        db_session.add(TrainerSubscription(tenant_id="trainer_a", tier="enterprise", status="active"))
        db_session.commit()

        assert await DatabaseSubscriptionProvider(db_session_factory).fetch("trainer_b") is None

    @pytest.mark.asyncio
    async def test_unknown_stored_tier(self, db_session_factory, db_session):
        db_session.add(TrainerSubscription(tenant_id="trainer_123", tier="gold", status="active"))
        db_session.commit()

        with pytest.raises(UnknownTierError):
            await DatabaseSubscriptionProvider(db_session_factory).fetch("trainer_123")

    @pytest.mark.asyncio
    async def test_unknown_stored_status(self, db_session_factory, db_session):
        db_session.add(TrainerSubscription(tenant_id="trainer_123", tier="starter", status="paused"))
        db_session.commit()

        with pytest.raises(UnknownStatusError):
            await DatabaseSubscriptionProvider(db_session_factory).fetch("trainer_123")

    @pytest.mark.asyncio
    async def test_database_errors_propagate(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        with pytest.raises(RuntimeError):
            await DatabaseSubscriptionProvider(broken_factory).fetch("trainer_123")


class TestDatabaseUsageProvider:

    @pytest.mark.asyncio
    async def test_no_row_is_zero_usage(self, db_session_factory):
        usage = await DatabaseUsageProvider(db_session_factory).fetch("trainer_123")
        assert usage == UsageSnapshot()

    @pytest.mark.asyncio
    async def test_reads_counters(self, db_session_factory, db_session):
        db_session.add(TierUsageTracking(
            tenant_id="trainer_123",
            customers_count=7,
            meal_plans_count=120,
            ai_generations_count=42,
        ))
        db_session.commit()

        usage = await DatabaseUsageProvider(db_session_factory).fetch("trainer_123")

        assert usage == UsageSnapshot(
            customer_count=7, meal_plan_count=120, ai_generation_count=42,
        )

    @pytest.mark.asyncio
    async def test_missing_database_url(self, monkeypatch):
        from evofit.database import session as session_module

        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setattr(session_module, "_engine", None)
        monkeypatch.setattr(session_module, "_SessionLocal", None)

        with pytest.raises(ValueError, match="DATABASE_URL"):
            await DatabaseUsageProvider().fetch("trainer_123")
