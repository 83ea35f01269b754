"""
Entitlement Audit Logger - Structured log of gate denials.

Denials are expected outcomes, not errors: they are written at INFO to the
dedicated "entitlements.audit" logger, with per-(tenant, action)
aggregation so a client retrying in a loop cannot flood the logs.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Optional

from evofit.entitlements.models import GateDecision

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")

DEFAULT_AGGREGATION_WINDOW_SECONDS = 60


@dataclass
class GateDenialEvent:
    """Structured event for a gate denial."""

    tenant_id: str
    action: str
    code: Optional[str]
    reason: Optional[str]
    current_tier: str
    required_tier: Optional[str] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    user_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_decision(
        cls,
        tenant_id: str,
        decision: GateDecision,
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
    ) -> "GateDenialEvent":
        return cls(
            tenant_id=tenant_id,
            action=decision.action or "subscription",
            code=decision.code.value if decision.code else None,
            reason=decision.reason,
            current_tier=decision.current_tier.value,
            required_tier=decision.required_tier.value if decision.required_tier else None,
            limit=decision.limit,
            current=decision.current,
            user_id=user_id,
            endpoint=endpoint,
            method=method,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EntitlementAuditLogger:
    """
    Audit logger for gate denials.

    Usage:
        get_audit_logger().log_denial(GateDenialEvent.from_decision(
            tenant_id="trainer_123",
            decision=decision,
            endpoint="/api/v1/exports",
        ))
    """

    def __init__(
        self,
        aggregation_window_seconds: int = DEFAULT_AGGREGATION_WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._aggregation_window_seconds = aggregation_window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc).timestamp())
        self._recent_denials: Dict[str, float] = {}
        self._aggregation_lock = Lock()

    def log_denial(self, event: GateDenialEvent) -> bool:
        """
        Log a gate denial.

        Returns:
            True if written, False if suppressed by aggregation
        """
        agg_key = f"{event.tenant_id}:{event.action}"
        if not self._check_aggregation(agg_key):
            return False

        audit_logger.info(
            "gate_denied",
            extra={
                "event_type": "gate_denied",
                "audit_data": event.to_dict(),
            },
        )
        logger.info(
            f"Gate denied: {event.action} for tenant {event.tenant_id}",
            extra={
                "tenant_id": event.tenant_id,
                "action": event.action,
                "code": event.code,
                "current_tier": event.current_tier,
                "required_tier": event.required_tier,
            },
        )
        return True

    def _check_aggregation(self, key: str) -> bool:
        """
        Check if event should be logged (aggregation).

        Returns False if the same denial was logged for the tenant within the window.
        """
        now = self._clock()

        with self._aggregation_lock:
            cutoff = now - self._aggregation_window_seconds
            self._recent_denials = {
                k: v for k, v in self._recent_denials.items()
                if v > cutoff
            }

            if key in self._recent_denials:
                return False

            self._recent_denials[key] = now
            return True


# Module-level singleton
_audit_instance: Optional[EntitlementAuditLogger] = None
_audit_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Get the singleton EntitlementAuditLogger instance."""
    global _audit_instance
    if _audit_instance is None:
        with _audit_lock:
            if _audit_instance is None:
                _audit_instance = EntitlementAuditLogger()
    return _audit_instance


def reset_audit_logger() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _audit_instance
    with _audit_lock:
        _audit_instance = None
