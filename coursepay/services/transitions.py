"""
Entitlement transitions.

The webhook processor, restoration and checkout verification all move an
entitlement through the same states; each transition is a single upsert on the
store so it is safe to apply any number of times.
"""
from datetime import datetime
from typing import Optional

from coursepay.models import ENDED_SUBSCRIPTION_STATUSES, EntitlementStatus, PaymentStatus
from coursepay.services.events import SubscriptionSnapshot
from coursepay.services.store import EntitlementChange, EntitlementStore

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
DELINQUENT_SUBSCRIPTION_STATUSES = ("past_due", "unpaid")


def activate(
    store: EntitlementStore,
    subject_id: str,
    course_id: str,
    paid_at: datetime,
    *,
    customer_ref: Optional[str] = None,
    subscription_ref: Optional[str] = None,
    session_ref: Optional[str] = None,
) -> bool:
    """Grant access. Returns False when a later refund on record wins."""
    return store.write_entitlement(EntitlementChange(
        subject_id=subject_id,
        course_id=course_id,
        status=EntitlementStatus.ACTIVE,
        payment_status=PaymentStatus.PAID,
        paid_at=paid_at,
        customer_ref=customer_ref,
        subscription_ref=subscription_ref,
        session_ref=session_ref,
    ))


def mark_past_due(
    store: EntitlementStore,
    subject_id: str,
    course_id: str,
    *,
    customer_ref: Optional[str] = None,
    subscription_ref: Optional[str] = None,
) -> None:
    """Payment is failing but the subscription is alive; access continues."""
    store.write_entitlement(
        EntitlementChange(
            subject_id=subject_id,
            course_id=course_id,
            status=EntitlementStatus.PAST_DUE,
            payment_status=PaymentStatus.PAST_DUE,
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
        ),
        preserve_refund=True,
    )


def end_subscription(
    store: EntitlementStore,
    policy: str,
    subject_id: str,
    course_id: str,
    *,
    customer_ref: Optional[str] = None,
    subscription_ref: Optional[str] = None,
) -> None:
    """
    The subscription is over. Billing always reads canceled; access follows
    the deleted-subscription policy ("retain" keeps the stored status).
    """
    store.write_entitlement(
        EntitlementChange(
            subject_id=subject_id,
            course_id=course_id,
            status=EntitlementStatus.CANCELED,
            payment_status=PaymentStatus.CANCELED,
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
        ),
        keep_status=policy == "retain",
        preserve_refund=True,
    )


def refund(
    store: EntitlementStore,
    subject_id: str,
    course_id: str,
    refunded_at: datetime,
    *,
    customer_ref: Optional[str] = None,
    subscription_ref: Optional[str] = None,
) -> bool:
    """Revoke access. Returns False when the stored purchase is newer than the refund."""
    return store.write_entitlement(EntitlementChange(
        subject_id=subject_id,
        course_id=course_id,
        status=EntitlementStatus.REFUNDED,
        payment_status=PaymentStatus.REFUNDED,
        refunded_at=refunded_at,
        customer_ref=customer_ref,
        subscription_ref=subscription_ref,
    ))


def apply_subscription_state(
    store: EntitlementStore,
    snapshot: SubscriptionSnapshot,
    policy: str,
) -> Optional[str]:
    """
    Bring the entitlement in line with a subscription's current status.

    Returns the entitlement status that was written, or None when the
    subscription status says nothing about access yet (incomplete, paused)
    or a refund recorded after the subscription started still stands.
    """
    refs = {"customer_ref": snapshot.customer_ref, "subscription_ref": snapshot.ref}

    if snapshot.status in ACTIVE_SUBSCRIPTION_STATUSES:
        paid_at = snapshot.started_at or snapshot.current_period_end
        if not activate(store, snapshot.subject_id, snapshot.course_id, paid_at, **refs):
            return None
        return EntitlementStatus.ACTIVE

    if snapshot.status in DELINQUENT_SUBSCRIPTION_STATUSES:
        mark_past_due(store, snapshot.subject_id, snapshot.course_id, **refs)
        return EntitlementStatus.PAST_DUE

    if snapshot.status in ENDED_SUBSCRIPTION_STATUSES:
        end_subscription(store, policy, snapshot.subject_id, snapshot.course_id, **refs)
        return EntitlementStatus.CANCELED

    return None
