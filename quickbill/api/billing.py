"""
Billing API routes.

- POST /api/billing/webhook: Handle Stripe webhooks

Checkout and portal sessions are created by the hosted billing pages; this
app only consumes their outcome.
"""
from fastapi import APIRouter, Request, HTTPException
from starlette.concurrency import run_in_threadpool

from quickbill.features.billing.service import billing_enabled, process_webhook_event
from quickbill.features.billing.provider import BillingWebhookError


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates the
    affected profile.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(status_code=503, detail="Billing disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(process_webhook_event, headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result.event_id}
