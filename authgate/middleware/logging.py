"""Request logging middleware with correlation IDs and OAuth parameter redaction."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from authgate.services.audit_service import extract_client_ip

CORRELATION_ID_HEADER = "X-Correlation-ID"
_CONTEXT_KEY = "correlation_id"

SENSITIVE_KEYS = {
    "authorization",
    "code",
    "cookie",
    "id_token",
    "jwt",
    "set-cookie",
    "state",
    "token",
}
REDACTED = "***REDACTED***"

logger = structlog.get_logger(__name__)


def _is_sensitive_key(key: str) -> bool:
    """Return True when key likely carries credential or flow material."""
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return "token" in normalized or "secret" in normalized


def redact_query_params(values: dict[str, str]) -> dict[str, str]:
    """Redact sensitive query parameter values."""
    return {key: REDACTED if _is_sensitive_key(key) else value for key, value in values.items()}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID and emit one structured log per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        """Log completion metadata for each request."""
        correlation_id = request.headers.get(CORRELATION_ID_HEADER, "").strip() or str(uuid4())
        request.state.correlation_id = correlation_id
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        start = perf_counter()
        query_params = redact_query_params(dict(request.query_params.items()))
        client_ip = extract_client_ip(request)
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    query_params=query_params,
                    status_code=500,
                    duration_ms=round((perf_counter() - start) * 1000, 2),
                    client_ip=client_ip,
                )
                raise

            event_logger = logger.warning if response.status_code >= 400 else logger.info
            event_logger(
                "request_completed",
                method=request.method,
                path=request.url.path,
                query_params=query_params,
                status_code=response.status_code,
                duration_ms=round((perf_counter() - start) * 1000, 2),
                client_ip=client_ip,
            )
        finally:
            structlog.contextvars.unbind_contextvars(_CONTEXT_KEY)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
