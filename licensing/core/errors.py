"""Error taxonomy and normalized error handlers.

InputError, AuthenticityError and UpstreamUnavailableError are the kinds a
handler may surface on purpose. "Not entitled" is never an exception, it is a
``valid: false`` result. Anything else is unexpected and answered with 500.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from licensing.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.extra = dict(extra or {})
        self.headers = dict(headers or {})


class InputError(AppError, ValueError):
    """Missing or malformed request fields. The caller must resend."""
    code = "invalid_input"
    status_code = 400


class AuthenticityError(AppError):
    """A signature or credential failed verification and was not processed."""
    code = "invalid_signature"
    status_code = 400


class UpstreamUnavailableError(AppError):
    """The billing provider or the store could not answer. Retry later."""
    code = "upstream_unavailable"
    status_code = 503


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[Dict[str, Any]] = None) -> dict:
    payload: Dict[str, Any] = dict(extra or {})
    payload.update({"error": message, "code": code, "request_id": request_id})
    return payload


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.extra)
    logger = logging.getLogger("licensing")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    for name, value in exc.headers.items():
        response.headers[name] = value
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    if exc.status_code == 404:
        code = "not_found"
    elif exc.status_code == 405:
        code = "method_not_allowed"
    else:
        code = "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, str(message), rid)
    logger = logging.getLogger("licensing")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """FastAPI body/query validation failures are InputErrors (400, not 422)."""
    return await app_error_handler(request, InputError("Malformed request"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("licensing")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Server error, please try again", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
