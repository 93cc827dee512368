from starlette.middleware.base import BaseHTTPMiddleware

from licensing.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count every answered request by method, route label and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        http_requests_total.inc({
            "method": request.method.upper(),
            "path": normalize_path(request.url.path),
            "status": str(response.status_code),
        })
        return response
