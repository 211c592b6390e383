"""
Domain errors raised by the booking, ledger and payment services.

Each error carries the HTTP status the global exception handler in ``main.py``
answers with, plus a stable machine code for clients.
"""
from typing import Any, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "marketplace_error"

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail if detail is not None else message


class ValidationFailed(MarketplaceError):
    """Malformed or out-of-range input, rejected before any state mutation."""
    status_code = 400
    code = "validation_failed"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class Forbidden(MarketplaceError):
    """The caller's role or ownership does not permit the operation."""
    status_code = 403
    code = "forbidden"


class InvalidTransition(MarketplaceError):
    status_code = 409
    code = "invalid_transition"


class CancellationWindowClosed(InvalidTransition):
    code = "cancellation_window_closed"


class AlreadyConfirmed(MarketplaceError):
    status_code = 409
    code = "already_confirmed"


class AlreadyDisputed(MarketplaceError):
    status_code = 409
    code = "already_disputed"


class InsufficientBalance(MarketplaceError):
    status_code = 400
    code = "insufficient_balance"


class GatewayError(MarketplaceError):
    """Transport or provider failure. Safe to retry."""
    status_code = 502
    code = "gateway_error"
    retryable = True


class GatewayDeclined(MarketplaceError):
    """Business decline from the payment provider. Retrying will not help."""
    status_code = 402
    code = "gateway_declined"
    retryable = False


class ConcurrentModification(MarketplaceError):
    """Optimistic update kept losing against other writers."""
    status_code = 409
    code = "concurrent_modification"


class DuplicateKey(MarketplaceError):
    """A unique human-facing code collided on insert."""
    status_code = 409
    code = "duplicate_key"
