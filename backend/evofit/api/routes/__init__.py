# API routes
from evofit.api.routes import entitlements

__all__ = ["entitlements"]
