"""
Booking engine error taxonomy.

    ValidationError   - malformed input, missing selection, unavailable slot
    ConflictError     - overlap detected at commit time; go back to time selection
    CapacityError     - plan credit exhausted; a decision point, not a failure
    LookupDegraded    - client history lookup failed; continue as a new client
    NotFoundError     - referenced entity does not exist for this tenant

Every error carries a machine-readable ``code`` (see ErrorCodes) and a
human-readable ``message`` that the UI can show next to the step it belongs to.
"""

from typing import Any, Optional

from .responses import ErrorCodes


class BookingError(Exception):
    """Base class for all engine errors."""

    code: str = ErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(message)


class ValidationError(BookingError):
    code = ErrorCodes.VALIDATION_ERROR


class UsageAlreadyRecorded(ValidationError):
    code = ErrorCodes.USAGE_ALREADY_RECORDED


class NotFoundError(BookingError):
    code = ErrorCodes.NOT_FOUND


class ConflictError(BookingError):
    code = ErrorCodes.SLOT_CONFLICT


class CapacityError(BookingError):
    code = ErrorCodes.CREDIT_LIMIT_REACHED

    def __init__(self, message: str, service_id: int, limit: int, used: int):
        super().__init__(
            message,
            details={"service_id": service_id, "limit": limit, "used": used},
        )
        self.service_id = service_id
        self.limit = limit
        self.used = used


class LookupDegraded(BookingError):
    code = ErrorCodes.LOOKUP_DEGRADED
