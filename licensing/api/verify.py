"""
Verification API routes.

- POST /verify {email}: resolve a purchase and mint an activation credential
- POST /verify {action: "revalidate", email, plan, token}: check a held credential

Entitlement absence is a 200 with ``valid: false``, never an HTTP error.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError
from starlette.concurrency import run_in_threadpool

from licensing.core.container import LicensingServices, get_services
from licensing.core.errors import InputError


router = APIRouter(tags=["verification"])


class VerifyRequest(BaseModel):
    """Body of POST /verify. Fields are checked per action in the handler."""
    model_config = ConfigDict(extra="ignore")

    action: Optional[StrictStr] = None
    email: Optional[StrictStr] = None
    plan: Optional[StrictStr] = None
    token: Optional[StrictStr] = None


async def read_json_body(request: Request, model):
    """Parse a JSON object body into ``model``; anything malformed is an InputError."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise InputError("Request body must be JSON", extra={"valid": False}) from exc
    if not isinstance(data, dict):
        raise InputError("Request body must be a JSON object", extra={"valid": False})
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InputError("Malformed request", extra={"valid": False}) from exc


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


@router.post("/verify")
async def verify(request: Request, services: LicensingServices = Depends(get_services)):
    """
    Verify a purchase, or revalidate a credential when ``action == "revalidate"``.

    Errors:
        400: missing email (or plan/token for revalidation)
        503: billing provider unreachable and no cached record
    """
    body = await read_json_body(request, VerifyRequest)
    service = services.verification

    if body.action == "revalidate":
        if not (_present(body.email) and _present(body.plan) and _present(body.token)):
            raise InputError("Email, plan and token are required", extra={"valid": False})
        result = await run_in_threadpool(service.revalidate, body.email, body.plan, body.token)
        return result.to_payload()

    if not _present(body.email):
        raise InputError("Email is required", extra={"valid": False})
    result = await run_in_threadpool(service.verify, body.email)
    return result.to_payload()
