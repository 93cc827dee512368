"""
Gift code API route.

POST /validate-gift-code {code}: rate limited per client IP.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, StrictStr
from starlette.concurrency import run_in_threadpool

from licensing.api.verify import read_json_body
from licensing.core.container import LicensingServices, get_services
from licensing.core.errors import InputError, RateLimitError
from licensing.core.logging import log_event
from licensing.core.metrics import ratelimit_block_total
from licensing.core.ratelimit import client_ip


router = APIRouter(tags=["gift-codes"])

RATE_LIMIT_SCOPE = "validate-gift-code"


class GiftCodeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[StrictStr] = None


def enforce_gift_code_rate_limit(request: Request, services: LicensingServices = Depends(get_services)) -> None:
    ip = client_ip(request.headers, request.client.host if request.client else None)
    decision = services.gift_limiter.hit(f"{RATE_LIMIT_SCOPE}:{ip}")
    if decision.allowed:
        return
    ratelimit_block_total.inc({"scope": RATE_LIMIT_SCOPE})
    log_event("warning", "ratelimit.blocked", error_code="rate_limited", extra={"path": request.url.path})
    raise RateLimitError(
        "Too many attempts, please wait and try again",
        extra={"valid": False, "retryAfter": decision.retry_after_seconds},
        headers={"Retry-After": str(decision.retry_after_seconds)},
    )


@router.post("/validate-gift-code", dependencies=[Depends(enforce_gift_code_rate_limit)])
async def validate_gift_code(request: Request, services: LicensingServices = Depends(get_services)):
    body = await read_json_body(request, GiftCodeRequest)
    if not body.code or not body.code.strip():
        raise InputError("Code is required", extra={"valid": False})
    result = await run_in_threadpool(services.verification.validate_gift_code, body.code)
    return result.to_payload()
