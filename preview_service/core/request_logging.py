"""
Request logging middleware.
Logs structured request/response info with timing.
NEVER logs: API keys, request bodies, sensitive headers.
"""
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from preview_service.core.request_context import set_request_id, get_current_user_id
from preview_service.core.metrics import metrics

logger = logging.getLogger("preview.request")

# Long-lived or noisy paths that are not logged per request
QUIET_PATHS = frozenset(["/health", "/notifications/stream"])


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Generates request_id
    - Logs request/response with timing and caller user id
    - Adds X-Request-Id header
    - Updates metrics
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))

        client_ip = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()

        start_time = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-Id"] = request_id

        metrics.inc("requests_total")
        status_class = response.status_code // 100
        if status_class == 2:
            metrics.inc("requests_2xx")
        elif status_class == 4:
            metrics.inc("requests_4xx")
        elif status_class == 5:
            metrics.inc("requests_5xx")

        if request.url.path not in QUIET_PATHS:
            logger.info(
                "request",
                extra={
                    "request_id": request_id,
                    "user_id": getattr(request.state, "user_id", None) or get_current_user_id(),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "client_ip": client_ip,
                }
            )

        return response
