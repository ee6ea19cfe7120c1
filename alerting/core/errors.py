"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from alerting.core.errors import (
        AlertingError,
        NotFoundError,
        ValidationError,
        DeliveryError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id="5c1f...")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from alerting.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertingError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(AlertingError):
    """Referenced alert, state or user is absent (404). Never retried."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class AlreadyExistsError(AlertingError):
    """A resource with the same identifier already exists (409)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            message=f"{resource} already exists",
            status_code=409,
            error_code="ALREADY_EXISTS",
            details={"resource": resource, **identifiers},
        )


class ValidationError(AlertingError):
    """Input validation failed (422). Raised before any mutation."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )
        self.field = field


class InvalidArgumentError(ValidationError):
    """An argument is well-formed but not acceptable at call time."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.error_code = "INVALID_ARGUMENT"


class DeliveryError(AlertingError):
    """A delivery channel failed (502). ``retryable`` drives the retry engine."""

    def __init__(
        self,
        message: str,
        *,
        channel: Optional[str] = None,
        retryable: bool = True,
        **details: Any,
    ):
        super().__init__(
            message=message,
            status_code=502,
            error_code="DELIVERY_ERROR",
            details={"channel": channel, "retryable": retryable, **details},
        )
        self.channel = channel
        self.retryable = retryable


class ConcurrencyConflict(AlertingError):
    """A state transition lost an optimistic-concurrency race (409)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            message=f"{resource} was modified concurrently",
            status_code=409,
            error_code="CONCURRENCY_CONFLICT",
            details={"resource": resource, **identifiers},
        )


class RateLimitError(AlertingError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(AlertingError)
    async def handle_alerting_error(request: Request, exc: AlertingError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
