"""
Billing API routes.

- POST /billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.concurrency import run_in_threadpool

from assetgate.features.billing.provider import BillingProvider
from assetgate.features.billing.service import process_webhook_event
from assetgate.features.billing.stripe_provider import get_billing_provider
from assetgate.features.notifications.service import send_notification


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    provider: BillingProvider = Depends(get_billing_provider),
):
    """
    Handle Stripe webhook events.

    Verifies the signature over the raw body, processes the event
    idempotently (deduplicated by Stripe event id) and acknowledges.
    Notifications are delivered after the response.

    Returns:
        {"received": true, "eventId": ..., "outcome": applied|skipped|ignored|duplicate}

    Errors:
        400: Invalid signature or payload (nothing written)
        500: Storage failure (the event stays unprocessed; Stripe retries)
    """
    body = await request.body()
    headers = dict(request.headers)

    outcome = await run_in_threadpool(process_webhook_event, headers, body, provider)
    for notification in outcome.notifications:
        background_tasks.add_task(send_notification, notification)

    return {"received": True, "eventId": outcome.event_id, "outcome": outcome.outcome}
