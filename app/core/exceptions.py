"""
Ordering Error Taxonomy

Typed errors returned by the order ledger, token service and stores.
Every error carries a machine-readable code and the HTTP status the API
layer maps it to, so callers can tell "no such order" apart from
"already served".

Author: Khalil Bannouri
Version: 4.0.0
"""

from typing import Optional


class OrderingError(Exception):
    """Base class for all expected ordering failures."""

    code: str = "ordering_error"
    status_code: int = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
        }


class ValidationError(OrderingError):
    """Malformed input: empty cart, non-positive quantities or prices."""
    code = "validation_error"
    status_code = 400


class NotFoundError(OrderingError):
    """Unknown order id or unresolved QR token. Expected in normal operation."""
    code = "not_found"
    status_code = 404


class ConflictError(OrderingError):
    """Illegal state transition or a uniqueness violation."""
    code = "conflict"
    status_code = 409


class DuplicateTokenError(ConflictError):
    """A QR token collided with an existing order at insert time."""
    code = "duplicate_qr_token"


class PermissionDeniedError(OrderingError):
    """The actor role may not request this transition."""
    code = "permission_denied"
    status_code = 403


class TransientError(OrderingError):
    """Store or channel unavailable or timed out. Safe to retry."""
    code = "transient_error"
    status_code = 503


__all__ = [
    "OrderingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "DuplicateTokenError",
    "PermissionDeniedError",
    "TransientError",
]
