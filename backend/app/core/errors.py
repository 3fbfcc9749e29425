"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Only validation errors are meant to reach the caller of alert creation.
Channel-level failures (ChannelSendFailure) are raised by provider
adapters and contained inside the dispatch task that issued the call.

Usage:
    from backend.app.core.errors import InvalidInput, register_error_handlers

    raise InvalidInput("message required", field="message")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SafetyAPIError(Exception):
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


class NotFoundError(SafetyAPIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(SafetyAPIError):
    """Input validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        status_code: int = 422,
        error_code: str = "VALIDATION_ERROR",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            details=d,
        )
        self.field = field


class InvalidInput(ValidationError):
    """A required alert field is missing or malformed (400)."""

    def __init__(self, message: str, *, field: str):
        super().__init__(
            message,
            field=field,
            status_code=400,
            error_code="INVALID_INPUT",
        )


class ChannelSendFailure(SafetyAPIError):
    """A notification provider call failed or reported a failed status."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Channel '{channel}' send failed: {message}",
            status_code=502,
            error_code="CHANNEL_SEND_FAILURE",
            details={"channel": channel, **details},
        )
        self.channel = channel


class ProviderConfigError(SafetyAPIError):
    """A provider was selected but its credentials are missing (500)."""

    def __init__(self, provider: str, missing: str):
        super().__init__(
            message=f"Provider '{provider}' is missing configuration: {missing}",
            status_code=500,
            error_code="PROVIDER_CONFIG_ERROR",
            details={"provider": provider, "missing": missing},
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
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SafetyAPIError)
    async def handle_safety_error(request: Request, exc: SafetyAPIError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
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
