"""
Core module - configuration, database, errors, and response formatting.
"""
from .config import Settings, get_settings
from .db import get_session, Base, engine, AsyncSessionLocal, UTCDateTime, utc_now
from .errors import (
    BookingError,
    ValidationError,
    UsageAlreadyRecorded,
    NotFoundError,
    ConflictError,
    CapacityError,
    LookupDegraded,
)
from .responses import (
    ErrorCodes,
    success_response,
    error_response,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    "UTCDateTime",
    "utc_now",
    # Errors
    "BookingError",
    "ValidationError",
    "UsageAlreadyRecorded",
    "NotFoundError",
    "ConflictError",
    "CapacityError",
    "LookupDegraded",
    # Responses
    "ErrorCodes",
    "success_response",
    "error_response",
]
