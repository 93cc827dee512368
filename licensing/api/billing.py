"""
Billing webhook route.

POST /billing-webhook: Stripe-signed change events.

Returns:
    200 {"received": true} once processed (unrecognized kinds included)
    400 on a missing or bad signature
    500 when the event could not be applied, so Stripe redelivers
"""
from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from licensing.core.container import LicensingServices, get_services


router = APIRouter(tags=["billing"])


@router.post("/billing-webhook")
async def billing_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    services: LicensingServices = Depends(get_services),
):
    # Raw body is required for signature verification
    body = await request.body()
    outcome = await run_in_threadpool(services.webhooks.ingest, body, stripe_signature)
    return {"received": True, "action": outcome.action}
