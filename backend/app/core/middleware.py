"""
Request middleware — correlation IDs, timing, one log line per request.

Correlation id, in order of preference:
    1. X-Request-ID sent by the caller (if it looks sane)
    2. I-Twilio-Idempotency-Token on provider callbacks, so a retried
       status callback logs under the same id as the first attempt
    3. a fresh random id

The verified user id (request.state.user_id, set by the auth layer in
front of this app) goes into the log context, so every line logged while
handling an alert, including the background dispatch it spawns, names
the user.

Provider status callbacks arrive once per state change of every SMS;
successful ones are logged at DEBUG to keep alert traffic readable.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import reset_request_context, set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health")

# Success level per route; failures are always WARNING or above
ROUTE_LOG_LEVELS: Dict[str, int] = {
    "/api/v1/alerts/sms-status": logging.DEBUG,
}

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")


def correlation_id(request: Request) -> str:
    for header in ("X-Request-ID", "I-Twilio-Idempotency-Token"):
        value = request.headers.get(header)
        if value and _SAFE_REQUEST_ID.match(value):
            return value
    return uuid.uuid4().hex[:16]


def success_level(path: str) -> int:
    return ROUTE_LOG_LEVELS.get(path, logging.INFO)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing and inject a correlation ID.

    Response headers: X-Request-ID, X-Process-Time.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = correlation_id(request)
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        token = set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            user_id=getattr(request.state, "user_id", None),
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500},
                exc_info=True,
            )
            reset_request_context(token)
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = success_level(path)
            logger.log(
                level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    "user_id": getattr(request.state, "user_id", None),
                },
            )

        reset_request_context(token)
        return response
