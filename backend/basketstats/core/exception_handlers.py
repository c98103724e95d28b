"""
FastAPI exception handlers.

WHAT: Maps the AppException hierarchy, request validation errors and raw
store failures onto the JSON error body
{"error", "message", "status_code", "details"}.

WHY: PayTech and the platform frontend both decide whether to retry from
the status code alone:
- 4xx: the request itself is wrong, retrying will not help
- 409: a concurrent change won; the caller may retry with a fresh read
- 503: the store is unavailable; the caller should retry after a delay
Every route must answer in that vocabulary, including failures raised
outside run_in_transaction().
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from basketstats.core.config import settings
from basketstats.core.exceptions import AppException, TransientStoreError

logger = logging.getLogger(__name__)


def _error_response(exc: AppException) -> JSONResponse:
    headers = None
    if exc.status_code == 503:
        headers = {"Retry-After": str(settings.STORE_RETRY_AFTER_SECONDS)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle AppException and its subclasses.

    Server-side failures are logged as errors. Conflicts are logged as
    warnings since they are expected under concurrent deliveries, and
    other client errors are not logged here at all.
    """
    if exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}",
            extra={"status_code": exc.status_code},
        )
    elif exc.status_code == 409:
        logger.warning(
            f"{exc.__class__.__name__} on {request.method} {request.url.path}",
            extra={"status_code": exc.status_code, "error_details": exc.to_dict()["details"]},
        )
    return _error_response(exc)


async def store_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    Handle database errors raised outside the unit-of-work runner.

    WHY: Read paths use the request session directly. A lost connection
    there is just as transient as one inside a transaction and must not
    surface as a generic 500.
    """
    logger.error(
        f"Store failure on {request.method} {request.url.path}: {exc.__class__.__name__}",
        extra={"status_code": 503},
    )
    return _error_response(TransientStoreError(path=request.url.path))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    WHY: Same body shape as our own exceptions, with one entry per invalid
    field. Answered with 400, like a malformed webhook body.
    """
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "status_code": 400,
            "details": {"errors": errors},
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle Starlette HTTP exceptions (404, 405 raised before our routes)."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPException",
            "message": exc.detail,
            "status_code": exc.status_code,
            "details": None,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    WHY: Log the full traceback but return a generic error to avoid leaking
    implementation details (OWASP A04: Insecure Design).
    """
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")

    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "message": "An unexpected error occurred",
            "status_code": 500,
            "details": None,
        },
    )
