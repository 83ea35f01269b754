"""
Tier usage tracking model.

Holds the per-tenant resource counters the usage snapshot is read from.
Counters are maintained by the resource-owning services (customers,
meal plans, AI generations); the entitlements engine only reads them.
"""

from sqlalchemy import Column, String, Integer, DateTime

from evofit.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class TierUsageTracking(Base, TimestampMixin, TenantScopedMixin):
    """Current resource counts for one tenant."""

    __tablename__ = "tier_usage_tracking"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    customers_count = Column(Integer, nullable=False, default=0)
    meal_plans_count = Column(Integer, nullable=False, default=0)
    ai_generations_count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="AI generations in the current billing period"
    )
    period_start = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Start of the period ai_generations_count covers"
    )

    def __repr__(self) -> str:
        return (
            f"<TierUsageTracking(tenant_id={self.tenant_id}, customers={self.customers_count}, "
            f"meal_plans={self.meal_plans_count}, ai_generations={self.ai_generations_count})>"
        )
