"""
Tier vocabulary for subscription gating.

Provides:
- Tier: Starter < Professional < Enterprise
- AnalyticsLevel: none < basic < advanced
- ExportFormat, Resource: closed sets, validated at config load
- SubscriptionStatus: billing statuses and which of them grant access
- TierDefinition: one tier's limits and feature flags
- UNLIMITED and limit_rank() for comparing limits

CRITICAL: Feature names and tiers never travel through the engine as
free-form strings. Parse them into these enums at the boundary.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, FrozenSet, Union

from evofit.entitlements.errors import UnknownStatusError, UnknownTierError

# -1 is the wire encoding of "no limit" (tiers.json and API responses)
UNLIMITED = -1


def is_unlimited(limit: int) -> bool:
    """Check if a limit value means unlimited."""
    return limit == UNLIMITED


def limit_rank(limit: int) -> float:
    """Sort key for limits: UNLIMITED ranks above every finite value."""
    if is_unlimited(limit):
        return float("inf")
    return float(limit)


class Tier(str, Enum):
    """Subscription tiers, declared in ascending order."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        # str comparison would order tiers alphabetically; always compare ranks
        return list(Tier).index(self)

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value: Any) -> "Tier":
        """
        Parse a stored or configured tier value.

        Raises:
            UnknownTierError: value does not name a tier
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise UnknownTierError(value)
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise UnknownTierError(value) from None


class AnalyticsLevel(str, Enum):
    """Analytics access levels, ordered NONE < BASIC < ADVANCED."""

    NONE = "none"
    BASIC = "basic"
    ADVANCED = "advanced"

    @property
    def rank(self) -> int:
        return list(AnalyticsLevel).index(self)

    def satisfies(self, required: "AnalyticsLevel") -> bool:
        """A granted level satisfies every requirement at or below it."""
        return self.rank >= required.rank


class ExportFormat(str, Enum):
    """Export formats. Gated by set membership, not by order."""

    PDF = "pdf"
    CSV = "csv"
    EXCEL = "excel"

    @property
    def label(self) -> str:
        return {
            ExportFormat.PDF: "PDF export",
            ExportFormat.CSV: "CSV export",
            ExportFormat.EXCEL: "Excel export",
        }[self]


class Resource(str, Enum):
    """Counted resources with per-tier quantity limits."""

    CUSTOMERS = "customers"
    MEAL_PLANS = "meal_plans"
    AI_GENERATIONS = "ai_generations"

    @property
    def label(self) -> str:
        return {
            Resource.CUSTOMERS: "Customer",
            Resource.MEAL_PLANS: "Meal plan",
            Resource.AI_GENERATIONS: "AI generation",
        }[self]


class SubscriptionStatus(str, Enum):
    """Billing status of a tenant's subscription."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    NONE = "none"

    @property
    def grants_access(self) -> bool:
        """
        Statuses that grant access unconditionally.

        CANCELED grants access until the paid period ends; that depends on
        the subscription record, see SubscriptionRecord.grants_access().
        """
        return self in _ACCESS_GRANTING_STATUSES

    @classmethod
    def parse(cls, value: Any) -> "SubscriptionStatus":
        """
        Parse a stored status. None means no subscription.

        Raises:
            UnknownStatusError: value does not name a status
        """
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "cancelled":
            normalized = cls.CANCELED.value
        try:
            return cls(normalized)
        except ValueError:
            raise UnknownStatusError(value) from None


_ACCESS_GRANTING_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})


@dataclass(frozen=True)
class TierDefinition:
    """Limits and feature flags granted by one tier."""

    tier: Tier
    display_name: str
    price_cents: int
    customer_limit: int
    meal_plan_limit: int
    ai_generation_limit: int
    analytics: AnalyticsLevel
    export_formats: FrozenSet[ExportFormat]
    api_access: bool
    bulk_operations: bool
    custom_branding: bool

    def limit_for(self, resource: Union[Resource, str]) -> int:
        resource = Resource(resource)
        if resource is Resource.CUSTOMERS:
            return self.customer_limit
        if resource is Resource.MEAL_PLANS:
            return self.meal_plan_limit
        return self.ai_generation_limit

    def limits(self) -> dict:
        return {resource: self.limit_for(resource) for resource in Resource}

    def exports(self, export_format: ExportFormat) -> bool:
        return export_format in self.export_formats

    def enabled_features(self) -> FrozenSet[str]:
        """Feature names granted by this tier, in action-descriptor form."""
        names = {f"export.{fmt.value}" for fmt in self.export_formats}
        if self.analytics.satisfies(AnalyticsLevel.BASIC):
            names.add("analytics.basic")
        if self.analytics.satisfies(AnalyticsLevel.ADVANCED):
            names.add("analytics.advanced")
        if self.api_access:
            names.add("api_access")
        if self.bulk_operations:
            names.add("bulk_operations")
        if self.custom_branding:
            names.add("custom_branding")
        return frozenset(names)
