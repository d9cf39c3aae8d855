"""Subscription cancellation at period end."""
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe
import structlog

from coursepay.core.config import Settings
from coursepay.core.errors import BadRequestError, NotFoundError, ProcessorError
from coursepay.core.jwt import SubjectIdentity
from coursepay.services.events import SubscriptionSnapshot
from coursepay.services.store import EntitlementStore
from coursepay.services.stripe_gateway import PaymentGateway

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CancelResult:
    subscription_ref: str
    cancel_at_period_end: bool
    current_period_end: Optional[datetime]


class CancellationService:
    def __init__(self, settings: Settings, store: EntitlementStore, gateway: PaymentGateway):
        settings.require()
        self.store = store
        self.gateway = gateway

    def cancel(self, subject: SubjectIdentity, course_id: str) -> CancelResult:
        """
        Ask Stripe to end the subscription at the close of the paid period and
        mirror the answer locally. Access is untouched until Stripe reports the
        subscription deleted.
        """
        if not course_id:
            raise BadRequestError("course_id is required")

        record = self.store.find_subscription(subject.subject_id, course_id)
        if record is None or record.has_ended:
            raise NotFoundError("No active subscription found")

        try:
            obj = self.gateway.cancel_at_period_end(record.processor_subscription_ref)
        except stripe.StripeError as e:
            logger.error(
                "Stripe cancellation failed",
                subscription_ref=record.processor_subscription_ref,
                error=str(e),
            )
            raise ProcessorError(e.user_message or str(e))

        snapshot = SubscriptionSnapshot.from_stripe(obj)
        # Subscriptions created before metadata was attached still belong to the caller
        snapshot = dataclasses.replace(
            snapshot,
            subject_id=snapshot.subject_id or record.subject_id,
            course_id=snapshot.course_id or record.course_id,
            customer_ref=snapshot.customer_ref or record.processor_customer_ref,
        )
        self.store.write_subscription(snapshot, event_at=datetime.now(timezone.utc))

        logger.info(
            "Subscription set to cancel at period end",
            subject_id=subject.subject_id,
            course_id=course_id,
            subscription_ref=snapshot.ref,
            current_period_end=snapshot.current_period_end.isoformat() if snapshot.current_period_end else None,
        )
        return CancelResult(
            subscription_ref=snapshot.ref,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            current_period_end=snapshot.current_period_end,
        )
