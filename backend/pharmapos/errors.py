# Overview: Domain error taxonomy shared by services and routes.

"""
Errors raised by the service layer.

Every error carries a human-readable message and a `details` dict that
routes return verbatim. `http_status` is the status routes answer with.
"""

from __future__ import annotations


class PosError(Exception):
    """Base class for domain errors."""

    http_status = 400
    code = "POS_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(PosError, ValueError):
    """400-level input problem. Raised before any database write."""

    http_status = 400
    code = "VALIDATION_ERROR"


class ConflictError(PosError, ValueError):
    """409-level business rule conflict (e.g., duplicate barcode)."""

    http_status = 409
    code = "CONFLICT"


class NotFoundError(PosError):
    http_status = 404
    code = "NOT_FOUND"


class AuthorizationError(PosError):
    """Acting principal is inactive or its role does not allow the action."""

    http_status = 403
    code = "PERMISSION_DENIED"


class PersistenceError(PosError):
    """
    A write to the store was rejected: constraint violation,
    connectivity failure or timeout.
    """

    http_status = 503
    code = "PERSISTENCE_ERROR"


class InsufficientStockError(PosError):
    """
    A conditional stock decrement found fewer units than requested at
    commit time. Kept apart from PersistenceError so clients can offer
    "reduce quantity and retry".
    """

    http_status = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, items: list[dict] | None = None):
        super().__init__(message, details={"items": items or []})
        self.items = items or []


class CheckoutInProgressError(PosError):
    """A checkout is already running for this cart."""

    http_status = 409
    code = "CHECKOUT_IN_PROGRESS"


class CheckoutCancelledError(PosError):
    """The caller cancelled the checkout before anything was written."""

    http_status = 409
    code = "CHECKOUT_CANCELLED"
