"""
Tier entitlements: computing, caching and enforcing subscription limits.

This module provides:
- TierCatalog: validated tier definitions loaded from config/tiers.json
- EntitlementsComputer: tier + usage snapshot → Entitlements
- EntitlementCache: TTL cache keyed by tenant, with immediate invalidation
- EntitlementsService: cache-or-compute entry point used by route handlers
- GateEnforcer: Entitlements + action → GateDecision (allow / deny + reason)
- EntitlementAuditLogger: structured log of gate denials

Decision flow: route → service.get_entitlements → gate check → allow or 403.
"""

from evofit.entitlements.tiers import (
    AnalyticsLevel,
    ExportFormat,
    Resource,
    SubscriptionStatus,
    Tier,
    TierDefinition,
    UNLIMITED,
    is_unlimited,
)
from evofit.entitlements.models import (
    DenialCode,
    Entitlements,
    FeatureSet,
    GateDecision,
    ResourceUsage,
    SubscriptionRecord,
    UsageSnapshot,
)
from evofit.entitlements.errors import (
    EntitlementCacheError,
    EntitlementError,
    GateDeniedError,
    ProviderUnavailableError,
    SubscriptionProviderUnavailable,
    TierCatalogError,
    UnknownFeatureError,
    UnknownStatusError,
    UnknownTierError,
    UsageProviderUnavailable,
)
from evofit.entitlements.loader import TierCatalog, get_tier_catalog
from evofit.entitlements.computer import EntitlementsComputer
from evofit.entitlements.cache import EntitlementCache, get_entitlement_cache
from evofit.entitlements.gate import FeatureRequirement, GateEnforcer, QuantityRequirement
from evofit.entitlements.service import EntitlementsService
from evofit.entitlements.audit import EntitlementAuditLogger, GateDenialEvent

__all__ = [
    "AnalyticsLevel",
    "ExportFormat",
    "Resource",
    "SubscriptionStatus",
    "Tier",
    "TierDefinition",
    "UNLIMITED",
    "is_unlimited",
    "DenialCode",
    "Entitlements",
    "FeatureSet",
    "GateDecision",
    "ResourceUsage",
    "SubscriptionRecord",
    "UsageSnapshot",
    "EntitlementCacheError",
    "EntitlementError",
    "GateDeniedError",
    "ProviderUnavailableError",
    "SubscriptionProviderUnavailable",
    "TierCatalogError",
    "UnknownFeatureError",
    "UnknownStatusError",
    "UnknownTierError",
    "UsageProviderUnavailable",
    "TierCatalog",
    "get_tier_catalog",
    "EntitlementsComputer",
    "EntitlementCache",
    "get_entitlement_cache",
    "FeatureRequirement",
    "GateEnforcer",
    "QuantityRequirement",
    "EntitlementsService",
    "EntitlementAuditLogger",
    "GateDenialEvent",
]
