"""
Error handling and sanitization

Unhandled route errors are logged in full and returned to the client as a
generic 500. Carrier and database details never reach the response body
outside DEBUG.
"""
import logging
import traceback
from typing import Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fulfillment_backend.core.config import settings
from fulfillment_backend.core.exceptions import FulfillmentError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "redis",
    "traceback",
    "file \"",
    "/fulfillment_backend/",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize an error message for safe client exposure.

    Args:
        error: The error string or exception

    Returns:
        Sanitized error message safe for client
    """
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 200:
        return message[:200] + "..."

    return message


async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    logger.error(f"Fulfillment error on {request.method} {request.url.path}: {exc!r}")
    return JSONResponse(
        status_code=500 if exc.severity == "P0" else 400,
        content={
            "error": exc.code,
            "message": sanitize_error_message(exc.message),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error_id = f"{request.client.host if request.client else 'unknown'}-{id(exc)}"
    logger.error(
        f"Unhandled exception [{error_id}]: {type(exc).__name__}: {exc}\n"
        f"Path: {request.url.path}\n"
        f"Method: {request.method}\n"
        f"Traceback:\n{traceback.format_exc()}"
    )

    if settings.DEBUG:
        content = {
            "error": "internal_error",
            "message": str(exc),
            "type": type(exc).__name__,
            "error_id": error_id,
        }
    else:
        content = {
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
            "error_id": error_id,
        }
    return JSONResponse(status_code=500, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
