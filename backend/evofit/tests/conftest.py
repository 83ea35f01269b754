"""
Root test configuration and fixtures.

Provides:
- Singleton resets so no test sees another test's catalog, cache or audit state
- A fixed clock and helpers for building entitlements
- Provider doubles (AsyncMock) and an SQLite-backed session factory
- JWT helpers for API tests
"""

import os
import time
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from evofit.database.session import init_db
from evofit.entitlements.audit import reset_audit_logger
from evofit.entitlements.cache import EntitlementCache, reset_entitlement_cache
from evofit.entitlements.computer import EntitlementsComputer
from evofit.entitlements.gate import GateEnforcer
from evofit.entitlements.loader import TierCatalog, reset_tier_catalog
from evofit.entitlements.models import SubscriptionRecord, UsageSnapshot
from evofit.entitlements.providers import SubscriptionProvider, UsageSnapshotProvider
from evofit.entitlements.service import EntitlementsService
from evofit.entitlements.tiers import SubscriptionStatus, Tier

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_JWT_SECRET = "test-secret-key-for-entitlements-at-least-32-bytes"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: tests that exercise the HTTP app")


class FakeClock:
    """Mutable clock for TTL tests."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """Every test starts with fresh singletons and no shared Redis."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("TIER_CATALOG_PATH", raising=False)
    monkeypatch.delenv("ENTITLEMENT_CACHE_TTL", raising=False)
    reset_tier_catalog()
    reset_entitlement_cache()
    reset_audit_logger()
    yield
    reset_tier_catalog()
    reset_entitlement_cache()
    reset_audit_logger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    """Catalog loaded from the packaged config/tiers.json."""
    return TierCatalog()


@pytest.fixture
def computer(catalog, clock):
    return EntitlementsComputer(catalog, ttl_seconds=300, clock=clock)


@pytest.fixture
def gate(catalog):
    return GateEnforcer(catalog)


@pytest.fixture
def make_entitlements(computer):
    """Factory: entitlements for a tier, status and usage."""

    def _make(
        tier=Tier.STARTER,
        customers: int = 0,
        meal_plans: int = 0,
        ai_generations: int = 0,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        subscription_active: Optional[bool] = None,
        tenant_id: str = "trainer_123",
    ):
        usage = UsageSnapshot(
            customer_count=customers,
            meal_plan_count=meal_plans,
            ai_generation_count=ai_generations,
        )
        return computer.compute(
            tier,
            usage,
            tenant_id=tenant_id,
            status=status,
            subscription_active=subscription_active,
        )

    return _make


@pytest.fixture
def subscription_provider():
    """Provider double returning an active Starter subscription."""
    provider = AsyncMock(spec=SubscriptionProvider)
    provider.fetch.return_value = SubscriptionRecord(
        tenant_id="trainer_123",
        tier=Tier.STARTER,
        status=SubscriptionStatus.ACTIVE,
    )
    return provider


@pytest.fixture
def usage_provider():
    """Provider double returning zero usage."""
    provider = AsyncMock(spec=UsageSnapshotProvider)
    provider.fetch.return_value = UsageSnapshot()
    return provider


@pytest.fixture
def memory_cache(clock):
    return EntitlementCache(clock=clock)


@pytest.fixture
def service(subscription_provider, usage_provider, memory_cache, catalog, clock):
    return EntitlementsService(
        subscription_provider=subscription_provider,
        usage_provider=usage_provider,
        cache=memory_cache,
        catalog=catalog,
        fetch_timeout_seconds=0.5,
        clock=clock,
    )


@pytest.fixture
def db_session_factory():
    """
    SQLite in-memory session factory with the entitlement tables created.

    StaticPool keeps a single connection so threadpool queries see the
    same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    init_db(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(db_session_factory):
    session = db_session_factory()
    try:
        yield session
    finally:
        session.close()


def make_token(
    tenant_id: Optional[str] = "trainer_123",
    user_id: str = "user_456",
    roles=None,
    secret: str = TEST_JWT_SECRET,
    expires_in: int = 3600,
) -> str:
    """Create an HS256 token the way the auth service issues them."""
    payload = {"sub": user_id, "exp": int(time.time()) + expires_in}
    if tenant_id is not None:
        payload["tenant_id"] = tenant_id
    if roles is not None:
        payload["roles"] = roles
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(**kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}
