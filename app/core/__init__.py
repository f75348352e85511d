"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from app.core.config import (
    get_settings,
    setup_logging,
    Settings,
    EnvironmentMode,
    LoyaltyRefreshMode,
)
from app.core.exceptions import (
    OrderingError,
    ValidationError,
    NotFoundError,
    ConflictError,
    DuplicateTokenError,
    PermissionDeniedError,
    TransientError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "LoyaltyRefreshMode",
    "OrderingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "DuplicateTokenError",
    "PermissionDeniedError",
    "TransientError",
]
