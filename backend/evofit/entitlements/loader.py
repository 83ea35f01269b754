"""
Tier Catalog - Load tier definitions from config/tiers.json.

Provides:
- TierCatalog: validated, immutable Tier -> TierDefinition lookup
- get_tier_catalog(): process-wide catalog singleton

CRITICAL: This is the source of truth for tier limits and feature flags.
Do NOT hardcode feature access elsewhere.
"""

import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from evofit.entitlements.errors import TierCatalogError, UnknownTierError
from evofit.entitlements.tiers import (
    AnalyticsLevel,
    ExportFormat,
    Resource,
    Tier,
    TierDefinition,
    UNLIMITED,
    limit_rank,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "tiers.json"

_BOOLEAN_FEATURES = ("api_access", "bulk_operations", "custom_branding")


def _parse_limit(tier_name: str, resource: Resource, value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise TierCatalogError(
            f"{tier_name}: limit for {resource.value} must be an integer, got {value!r}"
        )
    if value < 0 and value != UNLIMITED:
        raise TierCatalogError(
            f"{tier_name}: limit for {resource.value} must be >= 0 or {UNLIMITED} (unlimited)"
        )
    return value


def parse_tier_definition(data: Mapping[str, Any]) -> TierDefinition:
    """
    Build a TierDefinition from one entry of tiers.json.

    Raises:
        TierCatalogError: on any missing or out-of-vocabulary value
    """
    try:
        tier = Tier.parse(data.get("tier"))
    except UnknownTierError as e:
        raise TierCatalogError(str(e)) from e

    limits = data.get("limits") or {}
    features = data.get("features") or {}

    unknown_resources = set(limits) - {r.value for r in Resource}
    if unknown_resources:
        raise TierCatalogError(f"{tier.value}: unknown resources {sorted(unknown_resources)}")
    for resource in Resource:
        if resource.value not in limits:
            raise TierCatalogError(f"{tier.value}: missing limit for {resource.value}")

    try:
        analytics = AnalyticsLevel(features.get("analytics", AnalyticsLevel.NONE.value))
    except ValueError:
        raise TierCatalogError(
            f"{tier.value}: unknown analytics level {features.get('analytics')!r}"
        ) from None

    try:
        export_formats = frozenset(ExportFormat(f) for f in features.get("export_formats", []))
    except ValueError:
        raise TierCatalogError(
            f"{tier.value}: unknown export format in {features.get('export_formats')!r}"
        ) from None

    for flag in _BOOLEAN_FEATURES:
        if not isinstance(features.get(flag, False), bool):
            raise TierCatalogError(f"{tier.value}: feature {flag} must be a boolean")

    price_cents = data.get("price_cents", 0)
    if isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents < 0:
        raise TierCatalogError(f"{tier.value}: price_cents must be a non-negative integer")

    return TierDefinition(
        tier=tier,
        display_name=data.get("display_name") or tier.display_name,
        price_cents=price_cents,
        customer_limit=_parse_limit(tier.value, Resource.CUSTOMERS, limits[Resource.CUSTOMERS.value]),
        meal_plan_limit=_parse_limit(tier.value, Resource.MEAL_PLANS, limits[Resource.MEAL_PLANS.value]),
        ai_generation_limit=_parse_limit(
            tier.value, Resource.AI_GENERATIONS, limits[Resource.AI_GENERATIONS.value]
        ),
        analytics=analytics,
        export_formats=export_formats,
        api_access=features.get("api_access", False),
        bulk_operations=features.get("bulk_operations", False),
        custom_branding=features.get("custom_branding", False),
    )


def validate_monotonic(definitions: Mapping[Tier, TierDefinition]) -> None:
    """
    Check that a higher tier never grants less than a lower one.

    Raises:
        TierCatalogError: naming the first field that decreases
    """
    ordered = [definitions[tier] for tier in Tier]
    for lower, higher in zip(ordered, ordered[1:]):
        where = f"{lower.tier.value} -> {higher.tier.value}"
        for resource in Resource:
            if limit_rank(higher.limit_for(resource)) < limit_rank(lower.limit_for(resource)):
                raise TierCatalogError(f"{where}: {resource.value} limit decreases")
        if not higher.analytics.satisfies(lower.analytics):
            raise TierCatalogError(f"{where}: analytics level decreases")
        if not higher.export_formats >= lower.export_formats:
            raise TierCatalogError(f"{where}: export formats are not a superset")
        for flag in _BOOLEAN_FEATURES:
            if getattr(lower, flag) and not getattr(higher, flag):
                raise TierCatalogError(f"{where}: {flag} is revoked")


def build_definitions(raw_config: Mapping[str, Any]) -> Dict[Tier, TierDefinition]:
    """Parse and validate the whole tiers.json document."""
    definitions: Dict[Tier, TierDefinition] = {}
    for tier_data in raw_config.get("tiers", []):
        definition = parse_tier_definition(tier_data)
        if definition.tier in definitions:
            raise TierCatalogError(f"Tier {definition.tier.value} is defined more than once")
        definitions[definition.tier] = definition

    missing = [tier.value for tier in Tier if tier not in definitions]
    if missing:
        raise TierCatalogError(f"Tier catalog is missing tiers: {missing}")

    validate_monotonic(definitions)
    return definitions


class TierCatalog:
    """
    Immutable lookup table mapping Tier -> TierDefinition.

    Loaded once from tiers.json and validated at load; lookups never fail
    for a valid Tier. Thread-safe: readers only see fully built tables.

    Usage:
        catalog = get_tier_catalog()
        definition = catalog.definition_for(Tier.PROFESSIONAL)
        if definition.exports(ExportFormat.CSV):
            ...
    """

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        raw_config: Optional[Mapping[str, Any]] = None,
    ):
        """
        Initialize the catalog.

        Args:
            config_path: Optional path to tiers.json (defaults to TIER_CATALOG_PATH
                or the packaged config/tiers.json)
            raw_config: Already-parsed config document (skips file loading)
        """
        self._config_path = config_path
        self._load_lock = Lock()
        self._definitions: Dict[Tier, TierDefinition] = {}

        if raw_config is not None:
            self._definitions = build_definitions(raw_config)
        else:
            self._definitions = self._load_config()

    def _resolve_config_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)
        env_path = os.getenv("TIER_CATALOG_PATH")
        if env_path:
            return Path(env_path)
        return DEFAULT_CONFIG_PATH

    def _load_config(self) -> Dict[Tier, TierDefinition]:
        with self._load_lock:
            config_path = self._resolve_config_path()
            logger.info(f"Loading tier catalog from {config_path}")

            try:
                with open(config_path, "r") as f:
                    raw_config = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise TierCatalogError(f"Cannot read tier catalog {config_path}: {e}") from e

            definitions = build_definitions(raw_config)
            logger.info(f"Loaded {len(definitions)} tier definitions")
            return definitions

    def reload(self) -> None:
        """
        Reload configuration from disk (atomic swap).

        The new table is fully built and validated before it replaces the
        old one; on failure the previous table stays in place.
        """
        logger.info("Reloading tier catalog")
        try:
            definitions = self._load_config()
        except TierCatalogError:
            logger.error("Tier catalog reload failed, keeping previous catalog", exc_info=True)
            raise
        self._definitions = definitions

    def definition_for(self, tier: Union[Tier, str]) -> TierDefinition:
        """
        Get the definition for a tier.

        Raises:
            UnknownTierError: tier is not a Tier value
        """
        return self._definitions[Tier.parse(tier)]

    def definitions(self) -> List[TierDefinition]:
        """All definitions in ascending tier order."""
        return [self._definitions[tier] for tier in Tier]

    def lowest_tier_where(
        self,
        predicate: Callable[[TierDefinition], bool],
    ) -> Optional[TierDefinition]:
        """Scan tiers in ascending order and return the first that satisfies predicate."""
        for definition in self.definitions():
            if predicate(definition):
                return definition
        return None

    def compare_tiers(self, tier_a: Union[Tier, str], tier_b: Union[Tier, str]) -> int:
        """
        Compare two tiers.

        Returns:
            -1 if tier_a < tier_b
            0 if equal
            1 if tier_a > tier_b
        """
        rank_a = Tier.parse(tier_a).rank
        rank_b = Tier.parse(tier_b).rank
        if rank_a < rank_b:
            return -1
        if rank_a > rank_b:
            return 1
        return 0

    def is_upgrade(self, from_tier: Union[Tier, str], to_tier: Union[Tier, str]) -> bool:
        """Check if changing tiers would be an upgrade."""
        return self.compare_tiers(to_tier, from_tier) > 0

    def is_downgrade(self, from_tier: Union[Tier, str], to_tier: Union[Tier, str]) -> bool:
        """Check if changing tiers would be a downgrade."""
        return self.compare_tiers(to_tier, from_tier) < 0

    def features_lost_on_downgrade(
        self,
        from_tier: Union[Tier, str],
        to_tier: Union[Tier, str],
    ) -> List[str]:
        """Get the sorted feature names a tier change would remove."""
        lost = (
            self.definition_for(from_tier).enabled_features()
            - self.definition_for(to_tier).enabled_features()
        )
        return sorted(lost)


# Module-level singleton
_catalog_instance: Optional[TierCatalog] = None
_catalog_lock = Lock()


def get_tier_catalog() -> TierCatalog:
    """Get the singleton TierCatalog instance."""
    global _catalog_instance
    if _catalog_instance is None:
        with _catalog_lock:
            if _catalog_instance is None:
                _catalog_instance = TierCatalog()
    return _catalog_instance


def reset_tier_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _catalog_instance
    with _catalog_lock:
        _catalog_instance = None
