# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Standardized REST error responses for the EcoPulse API.

Every endpoint answers failures in one shape:
{
    "success": false,
    "error": {
        "code": "ERROR_CODE",
        "message": "Human readable message",
        "field": "optional offending field"
    }
}

Domain exceptions from ``ecopulse.core`` are mapped to codes and status
codes by ``domain_error``.
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
import uuid

from starlette.responses import JSONResponse

from ..core.exceptions import (
    AlreadyVoted,
    ConcurrentModification,
    ConflictDetected,
    DatabaseException,
    EcoPulseException,
    InsufficientCredibility,
    InvalidTransition,
    NotEligible,
    NotFoundError,
    NotOwner,
    ValidationException,
)

logger = logging.getLogger(__name__)

# Set ECOPULSE_DEBUG=1 to include exception details in 500 responses.
_DEBUG = os.environ.get("ECOPULSE_DEBUG", "0") == "1"

# =============================================================================
# STANDARD ERROR CODES
# =============================================================================

# Validation errors (400)
VALIDATION_MISSING_FIELD = "VALIDATION_MISSING_FIELD"
VALIDATION_INVALID_VALUE = "VALIDATION_INVALID_VALUE"
VALIDATION_INVALID_JSON = "VALIDATION_INVALID_JSON"

# Identity errors (401)
AUTH_MISSING_IDENTITY = "AUTH_MISSING_IDENTITY"

# Authorization errors (403)
FORBIDDEN_NOT_OWNER = "FORBIDDEN_NOT_OWNER"
FORBIDDEN_INSUFFICIENT_CREDIBILITY = "FORBIDDEN_INSUFFICIENT_CREDIBILITY"
FORBIDDEN_NOT_ELIGIBLE = "FORBIDDEN_NOT_ELIGIBLE"

# Not found errors (404)
NOT_FOUND_RESOURCE = "NOT_FOUND_RESOURCE"

# Conflict errors (409)
CONFLICT_ALREADY_VOTED = "CONFLICT_ALREADY_VOTED"
CONFLICT_CONCURRENT_MODIFICATION = "CONFLICT_CONCURRENT_MODIFICATION"
CONFLICT_INVALID_TRANSITION = "CONFLICT_INVALID_TRANSITION"
CONFLICT_DETECTED = "CONFLICT_DETECTED"

# Server errors (500)
INTERNAL_ERROR = "INTERNAL_ERROR"

# Service unavailable (503)
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

# Most specific class first; ``domain_error`` takes the first isinstance match.
_DOMAIN_ERRORS: list[tuple[type[EcoPulseException], str, int]] = [
    (ValidationException, VALIDATION_INVALID_VALUE, 400),
    (InsufficientCredibility, FORBIDDEN_INSUFFICIENT_CREDIBILITY, 403),
    (NotEligible, FORBIDDEN_NOT_ELIGIBLE, 403),
    (NotOwner, FORBIDDEN_NOT_OWNER, 403),
    (NotFoundError, NOT_FOUND_RESOURCE, 404),
    (AlreadyVoted, CONFLICT_ALREADY_VOTED, 409),
    (ConcurrentModification, CONFLICT_CONCURRENT_MODIFICATION, 409),
    (InvalidTransition, CONFLICT_INVALID_TRANSITION, 409),
    (ConflictDetected, CONFLICT_DETECTED, 409),
    (DatabaseException, SERVICE_UNAVAILABLE, 503),
]


# =============================================================================
# ERROR RESPONSE HELPERS
# =============================================================================


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    field: str | None = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code (e.g., VALIDATION_MISSING_FIELD)
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        field: Offending request field, when one can be named

    Returns:
        JSONResponse with standardized error format
    """
    error: dict = {"code": code, "message": message}
    if field:
        error["field"] = field
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


def missing_field_error(field_name: str) -> JSONResponse:
    """Create a 400 error for missing required field."""
    return error_response(VALIDATION_MISSING_FIELD, f"{field_name} is required", 400, field=field_name)


def invalid_json_error() -> JSONResponse:
    """Create a 400 error for invalid JSON body."""
    return error_response(VALIDATION_INVALID_JSON, "Invalid JSON body", status_code=400)


def identity_error(message: str = "Missing caller identity") -> JSONResponse:
    """Create a 401 error for requests without an upstream identity."""
    return error_response(AUTH_MISSING_IDENTITY, message, status_code=401)


def domain_error(exc: EcoPulseException) -> JSONResponse:
    """Map a core exception onto the standard error body."""
    for exc_type, code, status_code in _DOMAIN_ERRORS:
        if isinstance(exc, exc_type):
            if status_code >= 500:
                logger.error(f"{type(exc).__name__}: {exc.message}")
            field = exc.field if isinstance(exc, ValidationException) else None
            return error_response(code, exc.message, status_code, field=field)
    return internal_error(exc=exc)


def internal_error(
    message: str = "Internal server error",
    exc: BaseException | None = None,
) -> JSONResponse:
    """Create a 500 internal error response.

    Always includes a request_id for log correlation; with ECOPULSE_DEBUG=1
    the exception type and message are included as well.
    """
    request_id = uuid.uuid4().hex[:12]

    error_body: dict = {
        "code": INTERNAL_ERROR,
        "message": message,
        "request_id": request_id,
    }

    if exc is None:
        exc = sys.exc_info()[1]

    if exc is not None:
        logger.error("request_id=%s %s: %s", request_id, type(exc).__name__, exc)
        if _DEBUG:
            error_body["exception"] = type(exc).__name__
            error_body["detail"] = str(exc)
            error_body["traceback"] = traceback.format_exception_only(type(exc), exc)[0].strip()

    return JSONResponse({"success": False, "error": error_body}, status_code=500)
