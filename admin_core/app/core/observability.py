"""
Request observability middleware.

Every request gets a correlation id, taken from ``X-Correlation-ID`` when
the caller sends one. The id is stored on ``request.state`` so the access
guard and the audit trail can attach it to the security events and audit
entries written for that request, and it is echoed back on the response.
"""

import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("admin_core.requests")

CORRELATION_HEADER = "X-Correlation-ID"

# Probe endpoints are logged at debug so they do not drown admin traffic.
_QUIET_PATHS = frozenset({"/health", "/"})


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000  # ms

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Process-Time"] = f"{process_time:.2f}"

        log_data = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(process_time, 2),
            "ip": request.client.host if request.client else "unknown",
            "rate_limit_remaining": response.headers.get("X-RateLimit-Remaining"),
        }

        if response.status_code >= 500:
            logger.error("Admin request failed", extra=log_data)
        elif response.status_code == 429:
            logger.warning("Admin request throttled", extra=log_data)
        elif response.status_code in (401, 403):
            logger.warning("Admin request refused", extra=log_data)
        elif response.status_code >= 400:
            logger.info("Admin request rejected", extra=log_data)
        elif request.url.path in _QUIET_PATHS:
            logger.debug("Probe served", extra=log_data)
        else:
            logger.info("Admin request served", extra=log_data)

        return response
