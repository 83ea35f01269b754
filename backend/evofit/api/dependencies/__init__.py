"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from evofit.api.dependencies.entitlements import (
    create_gate_check,
    get_entitlements_service,
    require_feature,
    require_quantity,
)

__all__ = [
    "create_gate_check",
    "get_entitlements_service",
    "require_feature",
    "require_quantity",
]
