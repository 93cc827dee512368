"""
Health endpoints.

Lightweight liveness and readiness probes; no secrets are exposed.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from licensing.core.container import LicensingServices, get_services

logger = logging.getLogger("licensing")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(services: LicensingServices = Depends(get_services)):
    """Readiness check: the entitlement store answers a ping."""
    if await run_in_threadpool(services.cache.ping):
        return {"status": "ok"}
    logger.error("[readyz] entitlement store unreachable")
    return JSONResponse(status_code=503, content={"status": "error", "detail": "store unreachable"})
