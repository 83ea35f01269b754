"""
Gate enforcer: Entitlements + requested action -> GateDecision.

Stateless per call; everything it needs is in the Entitlements value and
the tier catalog. Server-side only: the API layer runs these checks on
every gated request regardless of what the client has already checked.

Action descriptors:
- FeatureRequirement: analytics[.basic|.advanced], api_access,
  bulk_operations, custom_branding, export.pdf|csv|excel
- QuantityRequirement: add `delta` of a Resource
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from evofit.entitlements.errors import UnknownFeatureError
from evofit.entitlements.loader import TierCatalog, get_tier_catalog
from evofit.entitlements.models import DenialCode, Entitlements, FeatureSet, GateDecision
from evofit.entitlements.tiers import (
    AnalyticsLevel,
    ExportFormat,
    Resource,
    SubscriptionStatus,
    is_unlimited,
    limit_rank,
)


class FeatureKind(str, Enum):
    ANALYTICS = "analytics"
    API_ACCESS = "api_access"
    BULK_OPERATIONS = "bulk_operations"
    CUSTOM_BRANDING = "custom_branding"
    EXPORT = "export"


_FLAG_LABELS = {
    FeatureKind.API_ACCESS: "API access",
    FeatureKind.BULK_OPERATIONS: "bulk operations",
    FeatureKind.CUSTOM_BRANDING: "custom branding",
}

# Flat names exposed by the entitlements payload
_EXPORT_ALIASES = {f"{fmt.value}_export": fmt for fmt in ExportFormat}


@dataclass(frozen=True)
class FeatureRequirement:
    """A feature an action needs, parsed from its descriptor."""

    kind: FeatureKind
    analytics_level: Optional[AnalyticsLevel] = None
    export_format: Optional[ExportFormat] = None

    @classmethod
    def parse(cls, feature: str, level: Optional[str] = None) -> "FeatureRequirement":
        """
        Parse an action descriptor such as "export.excel" or "analytics.advanced".

        Args:
            feature: Feature descriptor
            level: Required analytics level for a bare "analytics" descriptor

        Raises:
            UnknownFeatureError: descriptor or level is not recognised
        """
        if not isinstance(feature, str) or not feature.strip():
            raise UnknownFeatureError(feature)
        name = feature.strip().lower()
        base, _, qualifier = name.partition(".")

        if name in _EXPORT_ALIASES and level is None:
            return cls(kind=FeatureKind.EXPORT, export_format=_EXPORT_ALIASES[name])

        try:
            kind = FeatureKind(base)
        except ValueError:
            raise UnknownFeatureError(feature) from None

        if kind is FeatureKind.ANALYTICS:
            if qualifier and level is not None and qualifier != level.strip().lower():
                raise UnknownFeatureError(feature, f"Conflicting analytics levels in {feature!r}")
            wanted = qualifier or (level.strip().lower() if level else AnalyticsLevel.BASIC.value)
            try:
                analytics_level = AnalyticsLevel(wanted)
            except ValueError:
                raise UnknownFeatureError(feature, f"Unknown analytics level: {wanted!r}") from None
            if analytics_level is AnalyticsLevel.NONE:
                raise UnknownFeatureError(feature, "Analytics level 'none' is not a requirement")
            return cls(kind=kind, analytics_level=analytics_level)

        if level is not None:
            raise UnknownFeatureError(feature, f"Feature {feature!r} has no levels")

        if kind is FeatureKind.EXPORT:
            try:
                return cls(kind=kind, export_format=ExportFormat(qualifier))
            except ValueError:
                raise UnknownFeatureError(feature) from None

        if qualifier:
            raise UnknownFeatureError(feature)
        return cls(kind=kind)

    @property
    def name(self) -> str:
        if self.kind is FeatureKind.ANALYTICS:
            return f"analytics.{self.analytics_level.value}"
        if self.kind is FeatureKind.EXPORT:
            return f"export.{self.export_format.value}"
        return self.kind.value

    @property
    def label(self) -> str:
        if self.kind is FeatureKind.ANALYTICS:
            if self.analytics_level is AnalyticsLevel.ADVANCED:
                return "advanced analytics"
            return "analytics"
        if self.kind is FeatureKind.EXPORT:
            return self.export_format.label
        return _FLAG_LABELS[self.kind]

    def is_satisfied_by(self, features: FeatureSet) -> bool:
        if self.kind is FeatureKind.ANALYTICS:
            return features.analytics.satisfies(self.analytics_level)
        if self.kind is FeatureKind.EXPORT:
            # Set membership, not an ordering
            return features.exports(self.export_format)
        return bool(getattr(features, self.kind.value))


@dataclass(frozen=True)
class QuantityRequirement:
    """
    An action that adds `delta` of a resource.

    `current` overrides the snapshot count with a live count, e.g. one taken
    inside the transaction that performs the insert.
    """

    resource: Resource
    delta: int = 1
    current: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "resource", Resource(self.resource))
        if self.delta < 0:
            raise ValueError("delta cannot be negative")
        if self.current is not None and self.current < 0:
            raise ValueError("current cannot be negative")


Requirement = Union[FeatureRequirement, QuantityRequirement]


class GateEnforcer:
    """
    Translates Entitlements plus a requested action into a GateDecision.

    Every check first requires an access-granting subscription. Composite
    checks use AND semantics and stop at the first failure.
    """

    def __init__(self, catalog: Optional[TierCatalog] = None):
        self._catalog = catalog or get_tier_catalog()

    def check_subscription(self, entitlements: Entitlements) -> GateDecision:
        if entitlements.subscription_active:
            return GateDecision.allow(entitlements.tier)
        if entitlements.status is SubscriptionStatus.CANCELED:
            reason = "Subscription canceled"
        else:
            reason = "No active subscription"
        return GateDecision(
            allowed=False,
            current_tier=entitlements.tier,
            reason=reason,
            code=DenialCode.SUBSCRIPTION_INACTIVE,
        )

    def check_feature(
        self,
        entitlements: Entitlements,
        requirement: Union[FeatureRequirement, str],
        required_level: Optional[str] = None,
    ) -> GateDecision:
        """
        Feature gate.

        On deny, required_tier is the lowest catalog tier granting the feature.
        """
        if isinstance(requirement, str):
            requirement = FeatureRequirement.parse(requirement, required_level)

        subscription = self.check_subscription(entitlements)
        if not subscription.allowed:
            return subscription

        if requirement.is_satisfied_by(entitlements.features):
            return GateDecision.allow(entitlements.tier, action=requirement.name)

        granting = self._catalog.lowest_tier_where(
            lambda definition: requirement.is_satisfied_by(FeatureSet.from_definition(definition))
        )
        if granting is not None:
            reason = f"{granting.display_name} tier required for {requirement.label}"
        else:
            reason = f"{requirement.label.capitalize()} is not available on any tier"

        return GateDecision(
            allowed=False,
            current_tier=entitlements.tier,
            reason=reason,
            code=DenialCode.FEATURE_NOT_IN_TIER,
            required_tier=granting.tier if granting else None,
            action=requirement.name,
        )

    def check_quantity(
        self,
        entitlements: Entitlements,
        requirement: QuantityRequirement,
    ) -> GateDecision:
        """
        Quantity gate: allowed when the limit is unlimited or current + delta <= limit.

        The boundary is inclusive: reaching the limit exactly is allowed.
        """
        subscription = self.check_subscription(entitlements)
        if not subscription.allowed:
            return subscription

        resource = requirement.resource
        limit = entitlements.limit_for(resource)
        if requirement.current is not None:
            current = requirement.current
        else:
            current = entitlements.usage.count_for(resource)

        if is_unlimited(limit) or current + requirement.delta <= limit:
            return GateDecision.allow(
                entitlements.tier, action=resource.value, limit=limit, current=current,
            )

        needed = current + requirement.delta
        fitting = self._catalog.lowest_tier_where(
            lambda definition: limit_rank(definition.limit_for(resource)) >= needed
        )

        return GateDecision(
            allowed=False,
            current_tier=entitlements.tier,
            reason=f"{resource.label} limit reached ({current}/{limit})",
            code=DenialCode.LIMIT_REACHED,
            required_tier=fitting.tier if fitting else None,
            limit=limit,
            current=current,
            action=resource.value,
        )

    def check(self, entitlements: Entitlements, requirement: Requirement) -> GateDecision:
        if isinstance(requirement, QuantityRequirement):
            return self.check_quantity(entitlements, requirement)
        return self.check_feature(entitlements, requirement)

    def check_all(
        self,
        entitlements: Entitlements,
        requirements: Iterable[Requirement],
    ) -> GateDecision:
        """AND of all requirements; returns the first failing decision."""
        for requirement in requirements:
            decision = self.check(entitlements, requirement)
            if not decision.allowed:
                return decision
        return self.check_subscription(entitlements)
