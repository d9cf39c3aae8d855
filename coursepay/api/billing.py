"""
Billing API endpoints: checkout, restoration, cancellation and access checks.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from coursepay.api.deps import (
    get_cancellation_service,
    get_checkout_service,
    get_current_subject,
    get_restoration_service,
    get_settings,
    get_store,
)
from coursepay.core.config import Settings
from coursepay.core.jwt import SubjectIdentity
from coursepay.core.rate_limit import checkout_rate_limiter, get_client_ip
from coursepay.services.cancellation import CancellationService
from coursepay.services.checkout import CheckoutService
from coursepay.services.restoration import RestorationService
from coursepay.services.store import EntitlementStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    course_id: Optional[str] = None
    price_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CancelRequest(BaseModel):
    course_id: Optional[str] = None


class VerifyCheckoutRequest(BaseModel):
    session_id: Optional[str] = None
    course_id: Optional[str] = None


@router.post("/checkout")
def create_checkout(
    body: CheckoutRequest,
    request: Request,
    subject: SubjectIdentity = Depends(get_current_subject),
    checkout: CheckoutService = Depends(get_checkout_service),
    settings: Settings = Depends(get_settings),
):
    """
    Create a Stripe checkout session for a course.

    Returns the hosted checkout URL to redirect the buyer to.
    """
    # Rate limiting: N checkout attempts per minute per IP
    ip = get_client_ip(request)
    is_limited, retry_after = checkout_rate_limiter.is_rate_limited(
        ip, max_requests=settings.CHECKOUT_RATE_LIMIT_PER_MINUTE, window_seconds=60
    )
    if is_limited:
        logger.warning("Checkout rate limited", ip=ip)
        raise HTTPException(
            status_code=429,
            detail="Too many checkout attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    checkout_rate_limiter.record_request(ip)

    result = checkout.create_checkout(
        subject,
        body.course_id,
        price_id=body.price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return {"url": result.url, "session_id": result.session_id, "mode": result.mode}


@router.post("/verify-checkout")
def verify_checkout(
    body: VerifyCheckoutRequest,
    subject: SubjectIdentity = Depends(get_current_subject),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    """Confirm a checkout after the redirect back from Stripe and unlock the course."""
    checkout.verify_checkout(subject, body.session_id, body.course_id)
    return {"unlocked": True, "course_id": body.course_id}


@router.post("/restore")
def restore_entitlements(
    subject: SubjectIdentity = Depends(get_current_subject),
    restoration: RestorationService = Depends(get_restoration_service),
):
    """
    Re-derive the caller's entitlements from their Stripe subscriptions.
    """
    result = restoration.restore(subject)
    return {"restored": result.restored, "customer_ref": result.customer_ref}


@router.post("/cancel")
def cancel_subscription(
    body: CancelRequest,
    subject: SubjectIdentity = Depends(get_current_subject),
    cancellation: CancellationService = Depends(get_cancellation_service),
):
    """
    Cancel the caller's subscription for a course at the end of the paid period.
    """
    result = cancellation.cancel(subject, body.course_id)
    return {
        "subscription_ref": result.subscription_ref,
        "cancel_at_period_end": result.cancel_at_period_end,
        "current_period_end": result.current_period_end.isoformat() if result.current_period_end else None,
    }


@router.get("/access/{course_id}")
def get_access(
    course_id: str,
    subject: SubjectIdentity = Depends(get_current_subject),
    store: EntitlementStore = Depends(get_store),
):
    entitlement = store.get_entitlement(subject.subject_id, course_id)
    return {
        "course_id": course_id,
        "has_access": entitlement is not None and entitlement.has_access,
        "status": entitlement.status if entitlement else None,
        "payment_status": entitlement.payment_status if entitlement else None,
    }


@router.get("/entitlements")
def list_entitlements(
    subject: SubjectIdentity = Depends(get_current_subject),
    store: EntitlementStore = Depends(get_store),
):
    return [
        {
            "course_id": e.course_id,
            "status": e.status,
            "payment_status": e.payment_status,
            "has_access": e.has_access,
            "paid_at": e.paid_at.isoformat() if e.paid_at else None,
        }
        for e in store.list_entitlements(subject.subject_id)
    ]
