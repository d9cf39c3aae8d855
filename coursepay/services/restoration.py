"""
Restoration Service: rebuild a subject's entitlements from Stripe.

Used when the UI believes access is wrong (lost or misconfigured webhooks).
Stripe's current subscription list is treated as the truth and pushed through
the same transitions webhook handling uses.
"""
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe
import structlog

from coursepay.core.config import Settings
from coursepay.core.errors import ProcessorError
from coursepay.core.jwt import SubjectIdentity
from coursepay.services import transitions
from coursepay.services.events import SubscriptionSnapshot
from coursepay.services.store import EntitlementStore
from coursepay.services.stripe_gateway import PaymentGateway

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RestoreResult:
    restored: int
    customer_ref: Optional[str]


class RestorationService:
    def __init__(self, settings: Settings, store: EntitlementStore, gateway: PaymentGateway):
        settings.require()
        self.store = store
        self.gateway = gateway
        self.deleted_policy = settings.DELETED_SUBSCRIPTION_POLICY

    def _resolve_customer(self, subject: SubjectIdentity) -> Optional[str]:
        customer_ref = self.store.find_customer_ref(subject.subject_id)
        if customer_ref or not subject.email:
            return customer_ref
        try:
            return self.gateway.find_customer_by_email(subject.email)
        except stripe.StripeError as e:
            raise ProcessorError(e.user_message or str(e))

    def restore(self, subject: SubjectIdentity) -> RestoreResult:
        customer_ref = self._resolve_customer(subject)
        if not customer_ref:
            logger.info("No Stripe customer for subject, nothing to restore", subject_id=subject.subject_id)
            return RestoreResult(restored=0, customer_ref=None)

        try:
            subscriptions = self.gateway.list_subscriptions(customer_ref)
        except stripe.StripeError as e:
            raise ProcessorError(e.user_message or str(e))

        observed_at = datetime.now(timezone.utc)
        restored = 0
        for obj in subscriptions:
            snapshot = SubscriptionSnapshot.from_stripe(obj)
            # A customer found by email may hold subscriptions bought by another subject
            if snapshot.subject_id != subject.subject_id or not snapshot.course_id:
                logger.debug("Skipping subscription not owned by subject", subscription_ref=snapshot.ref)
                continue

            if not snapshot.customer_ref:
                snapshot = dataclasses.replace(snapshot, customer_ref=customer_ref)

            self.store.write_subscription(snapshot, event_at=observed_at)
            if transitions.apply_subscription_state(self.store, snapshot, self.deleted_policy) is not None:
                restored += 1

        logger.info(
            "Entitlements restored",
            subject_id=subject.subject_id,
            customer_ref=customer_ref,
            subscriptions_seen=len(subscriptions),
            restored=restored,
        )
        return RestoreResult(restored=restored, customer_ref=customer_ref)
