"""
Placeflow - Error Handling

Exception taxonomy for the pipeline and structured error responses for the API.

Taxonomy:
- StructuralError: malformed input file. Fatal to the request, no job enqueued.
- RecordValidationError: one record broke a rule. Collected, never fatal.
- ExternalServiceError: place-lookup failure. Retried by the job queue.
- RateLimitError: lookup quota exhausted. Retried by the job queue.
- PlaceNotFoundError: lookup answered but had no match. Not retried.
- InfrastructureError: queue store unreachable. Surfaced to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .models import ErrorKind

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class PlaceflowError(Exception):
    """Base error carrying its classification and HTTP mapping."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "internal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class StructuralError(PlaceflowError):
    kind = ErrorKind.VALIDATION
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "structural_error"

    def __init__(self, message: str, missing_headers: Iterable[str] = ()) -> None:
        self.missing_headers = list(missing_headers)
        super().__init__(message, missing_headers=self.missing_headers)


class RecordValidationError(PlaceflowError):
    kind = ErrorKind.VALIDATION
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "validation_error"

    def __init__(self, reasons: Iterable[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "Record is invalid", reasons=self.reasons)


class ExternalServiceError(PlaceflowError):
    kind = ErrorKind.EXTERNAL_SERVICE
    retryable = True
    http_status = status.HTTP_502_BAD_GATEWAY
    error_code = "external_service_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, status_code=status_code)


class RateLimitError(ExternalServiceError):
    kind = ErrorKind.RATE_LIMIT
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limit_exceeded"


class PlaceNotFoundError(ExternalServiceError):
    retryable = False
    http_status = status.HTTP_404_NOT_FOUND
    error_code = "place_not_found"


class InfrastructureError(PlaceflowError):
    kind = ErrorKind.INFRASTRUCTURE
    retryable = True
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "service_unavailable"


class UnknownQueueError(PlaceflowError):
    kind = ErrorKind.VALIDATION
    http_status = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class JobNotFoundError(PlaceflowError):
    kind = ErrorKind.VALIDATION
    http_status = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


# =============================================================================
# Error Response Models
# =============================================================================


class ErrorDetail(BaseModel):
    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    """
    Standardized error response format.

    All API errors return this structure for consistency.
    """

    error: str  # Machine-readable error code
    message: str  # Human-readable error message
    status_code: int
    details: list[ErrorDetail] | None = None


ERROR_BAD_REQUEST = "bad_request"
ERROR_NOT_FOUND = "not_found"
ERROR_CONFLICT = "conflict"
ERROR_PAYLOAD_TOO_LARGE = "payload_too_large"
ERROR_VALIDATION = "validation_error"
ERROR_INTERNAL = "internal_error"
ERROR_SERVICE_UNAVAILABLE = "service_unavailable"


def create_error_response(
    status_code: int,
    error: str,
    message: str,
    details: list[ErrorDetail] | None = None,
) -> JSONResponse:
    response = ErrorResponse(
        error=error,
        message=message,
        status_code=status_code,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(exclude_none=True),
    )


# =============================================================================
# Exception Handlers
# =============================================================================


async def placeflow_exception_handler(request: Request, exc: PlaceflowError) -> JSONResponse:
    """Render taxonomy errors; 5xx are logged, 4xx are the caller's problem."""
    if exc.http_status >= 500:
        logger.error(
            f"{type(exc).__name__} on {request.url.path}: {exc.message}",
            extra={"path": request.url.path, "status_code": exc.http_status},
        )

    details = None
    if isinstance(exc, StructuralError) and exc.missing_headers:
        details = [
            ErrorDetail(field=header, message="Missing required header", code="missing_header")
            for header in exc.missing_headers
        ]

    return create_error_response(
        status_code=exc.http_status,
        error=exc.error_code,
        message=exc.message,
        details=details,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_map = {
        400: ERROR_BAD_REQUEST,
        404: ERROR_NOT_FOUND,
        409: ERROR_CONFLICT,
        413: ERROR_PAYLOAD_TOO_LARGE,
        500: ERROR_INTERNAL,
        503: ERROR_SERVICE_UNAVAILABLE,
    }
    error_code = error_map.get(exc.status_code, ERROR_INTERNAL)

    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={"path": request.url.path, "status_code": exc.status_code},
        )

    if isinstance(exc.detail, dict):
        message = exc.detail.get("message", str(exc.detail))
    else:
        message = str(exc.detail)

    return create_error_response(
        status_code=exc.status_code,
        error=error_code,
        message=message,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert request validation errors to field-level details."""
    details = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field = ".".join(str(x) for x in loc) if loc else None
        details.append(
            ErrorDetail(
                field=field,
                message=error.get("msg", "Validation error"),
                code=error.get("type", "validation"),
            )
        )

    logger.warning(
        f"Validation error on {request.url.path}: {len(details)} errors",
        extra={"path": request.url.path, "count": len(details)},
    )

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error=ERROR_VALIDATION,
        message="Request validation failed",
        details=details,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log the traceback, never leak internals to the client."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error=ERROR_INTERNAL,
        message="An unexpected error occurred",
    )


def setup_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(PlaceflowError, placeflow_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
