from starlette.middleware.base import BaseHTTPMiddleware

from paybridge.core.metrics import http_requests_total, normalize_path

# Liveness, readiness and scrape requests are not billing traffic
_UNCOUNTED_PATHS = frozenset({"/healthz", "/readyz", "/metrics"})


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        if request.url.path not in _UNCOUNTED_PATHS:
            http_requests_total.inc(labels={
                "method": request.method.upper(),
                "path": normalize_path(request.url.path),
                "status": str(response.status_code),
            })
        return response
