"""Exception hierarchy shared by services and routes.

Every error carries an HTTP status, a machine-readable code and optional
details so the API error handler can render it without inspecting the type.
"""

from __future__ import annotations

from typing import Any, Optional


class RentalError(Exception):
    """Base class for all expected, user-facing failures."""

    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"success": False, "message": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationRequiredError(RentalError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class AuthorizationError(RentalError):
    """Raised when the actor lacks a permission."""

    status_code = 403
    code = "FORBIDDEN"
    default_message = "Insufficient permissions"


class TenantIsolationError(AuthorizationError):
    """Raised when a resource belongs to another company."""

    code = "TENANT_MISMATCH"
    default_message = "Access denied: resource belongs to another company"


class TenantContextError(RentalError):
    """Raised when an authenticated actor is not bound to any company."""

    status_code = 403
    code = "INVALID_TENANT_CONTEXT"
    default_message = "Access denied: invalid company context"


class NotFoundError(RentalError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class InvalidInputError(RentalError, ValueError):
    """Raised for invalid field values. ``details`` maps field -> reason."""

    status_code = 422
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"

    @classmethod
    def for_field(cls, field: str, reason: str) -> "InvalidInputError":
        return cls(f"Invalid {field}: {reason}", details={field: reason})


class InvalidTransitionError(RentalError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_message = "Transition not allowed"

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot {requested} {current} contract",
            details={"current_state": current, "requested": requested},
        )


class ConcurrentModificationError(RentalError):
    status_code = 409
    code = "STALE_STATE"
    default_message = "Contract was modified concurrently; reload and retry"


class VehicleUnavailableError(RentalError):
    status_code = 409
    code = "VEHICLE_UNAVAILABLE"
    default_message = "Vehicle is not available"


class CustomerBlacklistedError(RentalError):
    status_code = 403
    code = "CUSTOMER_BLACKLISTED"
    default_message = "Cannot create contract for blacklisted customer"
