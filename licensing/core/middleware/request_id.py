import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from licensing.core.logging import latency_bucket_ms, request_id_ctx_var
from licensing.core.metrics import normalize_path

REQUEST_ID_HEADER = "x-request-id"

# Caller-supplied ids are echoed into logs, so only short opaque tokens are accepted.
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

logger = logging.getLogger("licensing")


def resolve_request_id(incoming) -> str:
    if incoming and _SAFE_REQUEST_ID.match(incoming):
        return incoming
    return uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the request and log one completion line."""

    async def dispatch(self, request, call_next):
        rid = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "method": request.method,
                    "path": normalize_path(request.url.path),
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
