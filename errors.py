"""
Error taxonomy shared by the service layer.

Services raise these; `main` maps them to JSON responses with the
status code carried by each class. Anything not derived from
MarketplaceError is collapsed to a generic 500 at the app boundary.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, **self.extra}


class ValidationFailed(MarketplaceError):
    status_code = 400


class AuthenticationFailed(MarketplaceError):
    status_code = 401


class PermissionDenied(MarketplaceError):
    status_code = 403

    def __init__(self, message: str = "Access denied", extra: Optional[Dict[str, Any]] = None):
        super().__init__(message, extra)


class NotFound(MarketplaceError):
    status_code = 404


class DomainConflict(MarketplaceError):
    """A business rule rejected the request (stock, coupon, duplicates)."""
    status_code = 400


class InsufficientStock(DomainConflict):
    pass


class ServiceUnavailable(MarketplaceError):
    """Infrastructure failure the caller may retry (timeouts, mail, LLM)."""
    status_code = 503
