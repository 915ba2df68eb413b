"""
Engine error kinds.

Every error carries a message plus a `details` dict with the structured facts
a caller needs to build its own message (entity ids, requested vs. available
quantities). The engine never formats user-facing text.

Only ContentionError is retryable; everything else is terminal for the request.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for engine errors."""

    retryable = False
    # SecurityEvent type recorded after rollback, if any
    security_event_type: str | None = None

    def __init__(self, message: str, details: dict | None = None, *, context: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        # Server-side facts for the security log; never returned to callers
        self.context = context or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(LedgerError):
    """Malformed input (negative quantity/price, empty item list, ...)."""


class InsufficientStockError(LedgerError):
    """Operation would take an inventory entry below zero."""


class InvalidStateTransitionError(LedgerError):
    """Illegal order-status (or batch-status) move."""


class OverpaymentError(LedgerError):
    """Cumulative payments would exceed the order's effective total."""


class RefundExceedsOriginalError(LedgerError):
    """Refund quantity exceeds what is still refundable on an order item."""


class ContentionError(LedgerError):
    """Lock wait or optimistic version conflict; safe to retry."""

    retryable = True


class NotFoundError(LedgerError):
    """Unknown entity id."""


class TenantMismatchError(LedgerError):
    """
    Cross-tenant access attempt.

    Message and details match NotFoundError's, so the entity's existence in
    another business is not revealed. The owning business is kept in `context`.
    """

    security_event_type = "CROSS_TENANT_ACCESS_DENIED"


class PermissionDeniedError(LedgerError):
    """Caller is not allowed to perform the action (caller-side precondition)."""

    security_event_type = "PERMISSION_DENIED"
