"""
Trainer subscription model.

CRITICAL: One subscription row per tenant. The billing webhook collaborator
writes tier/status here and then notifies SubscriptionChangeNotifier so the
cached entitlements are invalidated.
"""

from sqlalchemy import Column, String, DateTime

from evofit.entitlements.tiers import SubscriptionStatus, Tier
from evofit.models.base import Base, TimestampMixin, TenantScopedMixin, generate_uuid


class TrainerSubscription(Base, TimestampMixin, TenantScopedMixin):
    """Current tier and billing status of a trainer's subscription."""

    __tablename__ = "trainer_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        String(32),
        nullable=False,
        default=Tier.STARTER.value,
        comment="starter | professional | enterprise"
    )
    status = Column(
        String(32),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE.value,
        index=True,
        comment="Billing status synced from the payment provider"
    )
    current_period_end = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of the paid period; canceled subscriptions keep access until then"
    )
    provider_subscription_id = Column(
        String(100),
        nullable=True,
        comment="Payment provider subscription reference"
    )

    def __repr__(self) -> str:
        return f"<TrainerSubscription(tenant_id={self.tenant_id}, tier={self.tier}, status={self.status})>"
