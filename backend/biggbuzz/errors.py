# Overview: Error taxonomy shared by the identity, OTP, registration and checkout services.

"""
Every service error derives from CoreError and carries:
- status_code: HTTP status the route layer answers with
- code: stable machine-readable identifier
- details: structured context for the client (field, product, shortfall...)

Routes catch CoreError and return ``jsonify(e.to_dict()), e.status_code``.
"""

from __future__ import annotations


class CoreError(Exception):
    """Base class for all domain errors."""
    status_code = 400
    code = "error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CoreError):
    """Malformed input or unmet precondition; the caller fixes the input."""
    status_code = 400
    code = "validation_error"


class ConflictError(CoreError):
    """Uniqueness violation; ``field`` names the conflicting attribute."""
    status_code = 409
    code = "conflict"

    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class AlreadyVerifiedError(ConflictError):
    code = "already_verified"


class NotFoundError(CoreError):
    status_code = 404
    code = "not_found"


class ExpiredError(CoreError):
    """Pending registration or OTP past its TTL; the flow must restart."""
    status_code = 410
    code = "expired"


class AttemptsExhaustedError(CoreError):
    """OTP retry budget spent; the flow must restart."""
    status_code = 429
    code = "attempts_exhausted"


class InvalidCodeError(CoreError):
    """OTP did not match or has expired. The two cases are not distinguished."""
    status_code = 400
    code = "invalid_code"


class EmptyCartError(CoreError):
    status_code = 400
    code = "empty_cart"


class OutOfStockError(CoreError):
    status_code = 409
    code = "out_of_stock"


class InsufficientBalanceError(CoreError):
    status_code = 402
    code = "insufficient_balance"


class NotCancellableError(CoreError):
    status_code = 409
    code = "not_cancellable"


class InvalidTransitionError(CoreError):
    status_code = 409
    code = "invalid_transition"


class TransportError(CoreError):
    """Outbound SMS/WhatsApp dispatch failed."""
    status_code = 502
    code = "transport_error"


class InvariantViolationError(CoreError):
    """
    Ledger or stock invariant broken. Fatal: the enclosing transaction is
    aborted and the condition is logged for operator attention.
    """
    status_code = 500
    code = "invariant_violation"
