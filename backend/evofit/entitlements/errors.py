"""
Structured error classes for entitlement evaluation and enforcement.

Two kinds of failure must never be confused by clients:
- GateDeniedError: the action is not part of the tenant's tier (403)
- ProviderUnavailableError: the decision could not be made right now (503)
"""

from typing import Any, Dict, Optional

from fastapi import status

DEFAULT_RETRY_AFTER_SECONDS = 5


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class UnknownTierError(EntitlementError, ValueError):
    """
    Raised when a tier value does not name a catalog tier.

    Indicates a data/config mismatch. Fatal, never retried.
    """

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Unknown tier: {value!r}")


class UnknownStatusError(EntitlementError, ValueError):
    """
    Raised when a stored billing status is not a known status.

    Same severity as UnknownTierError: a data mismatch, never retried.
    """

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Unknown subscription status: {value!r}")


class TierCatalogError(EntitlementError):
    """Raised when the tier table fails validation at load."""
    pass


class UnknownFeatureError(EntitlementError, ValueError):
    """Raised when an action descriptor names no known feature."""

    def __init__(self, feature: Any, detail: Optional[str] = None):
        self.feature = feature
        self.detail = detail or f"Unknown feature: {feature!r}"
        super().__init__(self.detail)


class EntitlementCacheError(EntitlementError):
    """Raised when a cache invalidation could not be applied."""
    pass


class ProviderUnavailableError(EntitlementError):
    """
    Raised when an external collaborator fails or times out.

    Retryable. Maps to 503 with a Retry-After hint, never to a 403.
    """

    error_code = "ENTITLEMENTS_UNAVAILABLE"
    retryable = True

    def __init__(
        self,
        tenant_id: str,
        detail: str,
        cause: Optional[Exception] = None,
        retry_after_seconds: int = DEFAULT_RETRY_AFTER_SECONDS,
    ):
        self.tenant_id = tenant_id
        self.detail = detail
        self.cause = cause
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Entitlements unavailable for {tenant_id}: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": "Entitlements are temporarily unavailable. Please retry.",
            "retryable": self.retryable,
        }


class UsageProviderUnavailable(ProviderUnavailableError):
    """The usage snapshot provider failed or timed out."""
    pass


class SubscriptionProviderUnavailable(ProviderUnavailableError):
    """The subscription provider failed or timed out."""
    pass


class GateDeniedError(EntitlementError):
    """
    Raised by route dependencies when a gate decision denies an action.

    The denial itself is a normal outcome; this exception only carries the
    decision to the HTTP layer, where it becomes a self-describing 403.
    """

    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, decision):
        self.decision = decision
        super().__init__(decision.reason or "Access denied")

    def to_dict(self) -> Dict[str, Any]:
        return self.decision.to_error_response()
