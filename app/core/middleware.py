"""
Request correlation middleware.

Every request gets a correlation id (taken from X-Correlation-ID or freshly
generated) that is echoed back in the response and stamped on every log line
written while the request is handled. Sync runs triggered by the request
inherit it, since background tasks copy the current context.
"""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import set_correlation_id, clear_correlation_id

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Polled constantly by probes and Prometheus; not worth a log line each
QUIET_PATHS = ("/health", "/api/health", "/metrics")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a correlation id to each request and log its outcome.

    Access in endpoints:
        correlation_id = request.state.correlation_id
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id

            if request.url.path not in QUIET_PATHS:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.info(
                    f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)",
                    extra={"status": response.status_code, "elapsed_ms": round(elapsed_ms, 1)},
                )
            return response
        finally:
            clear_correlation_id(token)
