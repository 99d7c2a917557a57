"""Middleware for rate limiting and Prometheus metrics."""

import re
import time
import logging
from collections import defaultdict, deque

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from custody_policy.metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_DURATION, RATE_LIMIT_HITS_TOTAL

logger = logging.getLogger(__name__)

# Probes and scrapes are never rate limited
UNLIMITED_PATHS = {"/metrics"}

WINDOW_SECONDS = 60


def _route_path(request: Request) -> str:
    """Route template (e.g. /api/policies/{policy_id}/evaluate) for low-cardinality labels."""
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    # Unmatched routes: collapse id-like segments
    return re.sub(r"/[^/]*\d[^/]*", "/{id}", request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests and observe latency per route template."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        path = _route_path(request)
        HTTP_REQUESTS_TOTAL.labels(
            method=request.method, path=path, status=str(response.status_code)
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=request.method, path=path).observe(duration)

        if response.status_code >= 500:
            logger.warning(
                "Request failed",
                extra={"method": request.method, "path": path, "status": response.status_code},
            )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per client IP, kept in memory."""

    def __init__(self, app, requests_per_minute: int = 120):
        super().__init__(app)
        self.rpm = requests_per_minute
        self.requests: dict[str, deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in UNLIMITED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "anonymous"
        now = time.time()
        window = self.requests[client_ip]
        while window and window[0] <= now - WINDOW_SECONDS:
            window.popleft()

        if len(window) >= self.rpm:
            RATE_LIMIT_HITS_TOTAL.inc()
            retry_after = max(1, int(window[0] + WINDOW_SECONDS - now))
            return JSONResponse(
                status_code=429,
                content={"detail": f"Rate limit of {self.rpm} requests per minute exceeded"},
                headers={"Retry-After": str(retry_after)},
            )

        window.append(now)
        return await call_next(request)
