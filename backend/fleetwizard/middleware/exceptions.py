"""Exception taxonomy and handlers for consistent error responses.

Wizard outcomes that the caller is expected to render (a failed validation
gate, a failed commit) are returned as data by the services.  The
exceptions here cover refusals: an operation that could not be applied
and left the session untouched.
"""

import logging
import traceback
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class FleetWizardException(Exception):
    """Base exception for FleetWizard application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Union[dict, list, None] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(FleetWizardException):
    """Exception for business logic violations."""

    def __init__(
        self,
        message: str,
        error_code: str = "BUSINESS_LOGIC_ERROR",
        details: Union[dict, list, None] = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
            details=details,
        )


class ResourceNotFoundError(FleetWizardException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str, error_code: str = "RESOURCE_NOT_FOUND"):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code=error_code,
        )


class ConflictError(FleetWizardException):
    """Exception for operations that clash with the session's current state."""

    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
        )


# ── Wizard refusals ──────────────────────────────────────────


class PrefillIncomplete(BusinessLogicError):
    """addLine was called before subject and date range were complete."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            message=f"Complete these before adding a line: {', '.join(missing)}",
            error_code="PREFILL_INCOMPLETE",
            details={"missing": missing},
        )


class PricingError(BusinessLogicError):
    """The rate table cannot price the requested range."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="PRICING_UNAVAILABLE")


class LineNotFound(ResourceNotFoundError):
    def __init__(self, line_id: str):
        self.line_id = line_id
        super().__init__("Line", line_id, error_code="LINE_NOT_FOUND")


class SessionNotFound(ResourceNotFoundError):
    def __init__(self, session_id: str):
        super().__init__("Wizard session", session_id, error_code="SESSION_NOT_FOUND")


class InvalidStep(ResourceNotFoundError):
    def __init__(self, step: Union[int, str]):
        super().__init__("Step", str(step), error_code="INVALID_STEP")


class SessionLocked(ConflictError):
    """Mutation attempted while submitting or after commit."""

    def __init__(self, status_value: str):
        super().__init__(
            message=f"Session is {status_value.lower()} and can no longer be edited",
            error_code="SESSION_LOCKED",
        )


class AlreadySubmitting(ConflictError):
    """A second submit() arrived while one is still in flight."""

    def __init__(self, session_id: str):
        super().__init__(
            message=f"Submission already in progress for session {session_id}",
            error_code="ALREADY_SUBMITTING",
        )


# ── Commit client errors ─────────────────────────────────────


class CommitTransportError(Exception):
    """The commit request's outcome is unknown (network error, timeout, 5xx).

    Safe to retry with the same idempotency key.
    """


class CommitRejected(Exception):
    """The commit endpoint definitively refused the request."""

    def __init__(self, message: str, error_code: str = "COMMIT_REJECTED"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


# ── Response helpers / handlers ──────────────────────────────


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    """Create standardized error response.

    Format:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable error message",
            "details": {...}  // Optional additional details
        }
    }
    """
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


async def fleetwizard_exception_handler(
    request: Request,
    exc: FleetWizardException,
) -> JSONResponse:
    """Handle custom FleetWizard exceptions."""
    logger.warning(
        f"FleetWizard exception: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={
                "path": request.url.path,
                "method": request.method,
            },
        )

    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def database_exception_handler(
    request: Request,
    exc: IntegrityError,
) -> JSONResponse:
    """Handle database integrity errors (unique violations, not null, ...)."""
    logger.error(
        f"Database integrity error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    error_msg = str(exc.orig) if hasattr(exc, "orig") else str(exc)

    if "unique" in error_msg.lower():
        message = "A record with this value already exists"
        error_code = "DUPLICATE_RECORD"
    elif "not null" in error_msg.lower():
        message = "Required field is missing"
        error_code = "NULL_VALUE_NOT_ALLOWED"
    else:
        message = "Database constraint violation"
        error_code = "INTEGRITY_ERROR"

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message=message,
        error_code=error_code,
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    """Handle database operational errors (connection issues, etc.)."""
    logger.error(
        f"Database operational error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger.error(
        f"Unhandled exception on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
        exc_info=True,
    )

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(FleetWizardException, fleetwizard_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
