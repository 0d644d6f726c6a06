"""
Standardized API Response Module

Provides consistent response formatting across all API endpoints.

RESPONSE FORMAT:
    Success:
        {
            "data": <response data>,
            "status": "success"
        }

    Error:
        {
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }
"""

from typing import Any, Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    BOOKING_SESSION_NOT_FOUND = "BOOKING_SESSION_NOT_FOUND"

    # Validation errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PHONE = "INVALID_PHONE"
    MISSING_SELECTION = "MISSING_SELECTION"
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    INVALID_STEP = "INVALID_STEP"
    INVALID_SCHEDULE = "INVALID_SCHEDULE"
    USAGE_ALREADY_RECORDED = "USAGE_ALREADY_RECORDED"
    ACTIVE_APPOINTMENT_EXISTS = "ACTIVE_APPOINTMENT_EXISTS"
    CANCEL_NOT_ALLOWED = "CANCEL_NOT_ALLOWED"

    # Conflict errors (409)
    SLOT_CONFLICT = "SLOT_CONFLICT"
    CREDIT_LIMIT_REACHED = "CREDIT_LIMIT_REACHED"

    # Degraded lookups (never surfaced as failures)
    LOOKUP_DEGRADED = "LOOKUP_DEGRADED"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any) -> dict:
    """Create a standardized success response dict."""
    return {"data": data, "status": "success"}


def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """
    Create a standardized error response dict.

    ``details`` is omitted when empty.
    """
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
