"""
Webhook endpoint for Stripe.
"""
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from coursepay.api.deps import get_notification_processor
from coursepay.services.notifications import NotificationProcessor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    processor: NotificationProcessor = Depends(get_notification_processor),
):
    """
    Handle Stripe webhook events.

    Events handled:
    - checkout.session.completed / async_payment_succeeded: unlock the course
    - invoice.paid: subscription renewal or recovery
    - customer.subscription.created / updated: mirror subscription state
    - customer.subscription.deleted: subscription ended
    - charge.refunded: revoke access

    Anything else is logged as ignored. Only a bad signature or an unreadable
    body is refused; everything else answers 200 so Stripe stops retrying.
    """
    # Raw body: the signature covers the exact bytes
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    result = await run_in_threadpool(processor.process, body, signature)
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}
