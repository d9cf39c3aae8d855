"""
Notification Processor: Stripe webhook deliveries -> entitlement state.

Flow for one delivery:
1. Verify the Stripe-Signature header against the configured secrets. No
   match: log the attempt under an "unverified:" key and refuse (400).
2. Parse the verified JSON into a typed event (services.events).
3. Dispatch on the event class. Handlers only ever upsert, so redelivery of
   the same event converges on the same state.
4. Write exactly one Event Log entry with the outcome.

Once a delivery is authentic the processor answers success even if handling
failed: the failure is logged with the full payload and reported, and an
operator replays it from the log after fixing the cause. Redelivery from
Stripe would rarely succeed where the first attempt failed.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import structlog

from coursepay.core.config import Settings
from coursepay.core.context import set_event_id
from coursepay.core.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    WebhookAuthenticityError,
    capture_exception,
)
from coursepay.models import ENDED_SUBSCRIPTION_STATUSES, NotificationOutcome
from coursepay.services import transitions
from coursepay.services.event_log import EventLog
from coursepay.services.events import (
    ChargeRefunded,
    CheckoutCompleted,
    InvoicePaid,
    ProcessorEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    UnrecognizedEvent,
    invoice_subscription_ref,
    parse_event,
)
from coursepay.services.store import EntitlementStore
from coursepay.services.stripe_gateway import PaymentGateway
from coursepay.services.verification import VerifierChain

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    event_id: str
    event_type: str
    outcome: str
    message: str
    verified_by: Optional[str] = None


@dataclass(frozen=True)
class _Handled:
    outcome: str
    message: str


def _missing_metadata(what: str) -> _Handled:
    return _Handled(
        NotificationOutcome.WARNING,
        f"{what} has no subject_id/course_id metadata; nothing to update",
    )


def _refund_stands(subject_id: str, course_id: str) -> _Handled:
    return _Handled(
        NotificationOutcome.IGNORED,
        f"Entitlement {subject_id}/{course_id} was refunded after this payment; refund stands",
    )


def _load_event(body: str) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError:
        raise BadRequestError("Webhook body is not valid JSON")
    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
        raise BadRequestError("Webhook body is not a Stripe event")
    return payload


def _is_replayable(payload: Any) -> bool:
    return isinstance(payload, Mapping) and bool(payload.get("id")) and bool(payload.get("type"))


class NotificationProcessor:
    def __init__(
        self,
        settings: Settings,
        store: EntitlementStore,
        event_log: EventLog,
        gateway: PaymentGateway,
        verifiers: Optional[VerifierChain] = None,
    ):
        settings.require()
        self.store = store
        self.event_log = event_log
        self.gateway = gateway
        self.verifiers = verifiers or VerifierChain.from_settings(settings)
        self.deleted_policy = settings.DELETED_SUBSCRIPTION_POLICY

        self._handlers: dict[type, Callable[[Any], _Handled]] = {
            CheckoutCompleted: self._on_checkout_completed,
            InvoicePaid: self._on_invoice_paid,
            SubscriptionChanged: self._on_subscription_changed,
            SubscriptionDeleted: self._on_subscription_deleted,
            ChargeRefunded: self._on_charge_refunded,
            UnrecognizedEvent: self._on_unrecognized,
        }

    def process(self, raw_body: bytes, signature: Optional[str]) -> NotificationResult:
        """
        Handle one webhook delivery.

        Raises:
            WebhookAuthenticityError: signature missing or matching no secret
            BadRequestError: authentic body that is not a Stripe event
        """
        body = raw_body.decode("utf-8", errors="replace")

        verified_by = self.verifiers.match(body, signature)
        if verified_by is None:
            reason = (
                "Missing Stripe-Signature header"
                if not signature
                else "Signature did not match any configured webhook secret"
            )
            log_id = self.event_log.record_rejected(body, reason)
            logger.warning("Webhook rejected", log_id=log_id, reason=reason, verifiers=self.verifiers.names)
            raise WebhookAuthenticityError(reason)

        try:
            payload = _load_event(body)
        except BadRequestError as exc:
            self.event_log.record_rejected(body, exc.message, verified_by=verified_by)
            raise

        return self._run(payload, verified_by, count_delivery=True)

    def replay(self, event_id: str) -> NotificationResult:
        """Re-run a logged, verified event through the dispatcher."""
        entry = self.event_log.get(event_id)
        if entry is None:
            raise NotFoundError(f"No notification logged with id {event_id}")
        if not entry.verified or not _is_replayable(entry.raw_payload):
            raise ConflictError("Only verified Stripe events can be replayed")

        logger.info("Replaying notification", event_id=event_id, previous_outcome=entry.outcome)
        return self._run(dict(entry.raw_payload), entry.verified_by, count_delivery=False)

    def _run(self, payload: dict[str, Any], verified_by: Optional[str], count_delivery: bool) -> NotificationResult:
        event_id = str(payload["id"])
        event_type = str(payload["type"])
        set_event_id(event_id)

        try:
            event = parse_event(payload)
            handled = self._dispatch(event)
        except Exception as exc:
            self.store.rollback()
            capture_exception(
                exc,
                context={"event_id": event_id, "event_type": event_type, "verified_by": verified_by},
            )
            handled = _Handled(NotificationOutcome.ERROR, f"{type(exc).__name__}: {exc}")

        self.event_log.record(
            event_id,
            event_type,
            handled.outcome,
            message=handled.message,
            raw_payload=payload,
            verified_by=verified_by,
            count_delivery=count_delivery,
        )
        return NotificationResult(
            event_id=event_id,
            event_type=event_type,
            outcome=handled.outcome,
            message=handled.message,
            verified_by=verified_by,
        )

    def _dispatch(self, event: ProcessorEvent) -> _Handled:
        return self._handlers[type(event)](event)

    # ---- handlers ----

    def _on_checkout_completed(self, event: CheckoutCompleted) -> _Handled:
        if not event.subject_id or not event.course_id:
            return _missing_metadata(f"Checkout session {event.session_ref}")
        if not event.is_paid:
            return _Handled(
                NotificationOutcome.IGNORED,
                f"Checkout session {event.session_ref} not paid yet (payment_status={event.payment_status})",
            )

        activated = transitions.activate(
            self.store,
            event.subject_id,
            event.course_id,
            paid_at=event.created,
            customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
            session_ref=event.session_ref,
        )
        if not activated:
            return _refund_stands(event.subject_id, event.course_id)
        return _Handled(NotificationOutcome.OK, f"Entitlement {event.subject_id}/{event.course_id} active")

    def _on_invoice_paid(self, event: InvoicePaid) -> _Handled:
        if not event.subscription_ref:
            return _Handled(NotificationOutcome.IGNORED, f"Invoice {event.invoice_ref} is not for a subscription")

        # Invoices carry only the subscription reference
        subscription = SubscriptionSnapshot.from_stripe(
            self.gateway.retrieve_subscription(event.subscription_ref)
        )
        if not subscription.has_correlation:
            return _missing_metadata(f"Subscription {subscription.ref}")

        self.store.write_subscription(subscription, event_at=datetime.now(timezone.utc))
        if subscription.status in ENDED_SUBSCRIPTION_STATUSES:
            return _Handled(NotificationOutcome.IGNORED, f"Subscription {subscription.ref} already ended")

        activated = transitions.activate(
            self.store,
            subscription.subject_id,
            subscription.course_id,
            paid_at=event.created,
            customer_ref=subscription.customer_ref or event.customer_ref,
            subscription_ref=subscription.ref,
        )
        if not activated:
            return _refund_stands(subscription.subject_id, subscription.course_id)
        return _Handled(
            NotificationOutcome.OK,
            f"Entitlement {subscription.subject_id}/{subscription.course_id} active",
        )

    def _on_subscription_changed(self, event: SubscriptionChanged) -> _Handled:
        subscription = event.subscription
        if not subscription.has_correlation:
            return _missing_metadata(f"Subscription {subscription.ref}")

        if not self.store.write_subscription(subscription, event_at=event.created):
            return _Handled(
                NotificationOutcome.IGNORED,
                f"Stale {event.event_type} for {subscription.ref}; newer state already stored",
            )

        if subscription.status in transitions.DELINQUENT_SUBSCRIPTION_STATUSES:
            transitions.mark_past_due(
                self.store,
                subscription.subject_id,
                subscription.course_id,
                customer_ref=subscription.customer_ref,
                subscription_ref=subscription.ref,
            )
            return _Handled(
                NotificationOutcome.OK,
                f"Entitlement {subscription.subject_id}/{subscription.course_id} past_due",
            )

        # Scheduled cancellation keeps access until the period ends
        return _Handled(
            NotificationOutcome.OK,
            f"Subscription {subscription.ref} recorded as {subscription.status}"
            + (" (cancels at period end)" if subscription.cancel_at_period_end else ""),
        )

    def _on_subscription_deleted(self, event: SubscriptionDeleted) -> _Handled:
        subscription = event.subscription
        if not subscription.has_correlation:
            return _missing_metadata(f"Subscription {subscription.ref}")

        self.store.write_subscription(subscription, event_at=event.created, force=True)
        transitions.end_subscription(
            self.store,
            self.deleted_policy,
            subscription.subject_id,
            subscription.course_id,
            customer_ref=subscription.customer_ref,
            subscription_ref=subscription.ref,
        )
        return _Handled(
            NotificationOutcome.OK,
            f"Subscription {subscription.ref} ended (policy={self.deleted_policy})",
        )

    def _refund_target(self, event: ChargeRefunded) -> Optional[tuple[str, str, Optional[str]]]:
        """
        (subject_id, course_id, subscription_ref) the refunded charge paid for.

        One-time charges carry the checkout metadata. Invoice charges are
        traced through their subscription. The customer's latest subscription
        is the last resort for charges that carry neither.
        """
        if event.has_correlation:
            return event.subject_id, event.course_id, event.subscription_ref

        subscription_ref = event.subscription_ref
        if subscription_ref is None and event.invoice_ref:
            subscription_ref = invoice_subscription_ref(self.gateway.retrieve_invoice(event.invoice_ref))

        record = None
        if subscription_ref:
            record = self.store.get_subscription(subscription_ref)
        if record is None and event.customer_ref:
            record = self.store.latest_subscription_for_customer(event.customer_ref)
        if record is None:
            return None
        return record.subject_id, record.course_id, record.processor_subscription_ref

    def _on_charge_refunded(self, event: ChargeRefunded) -> _Handled:
        if not event.fully_refunded:
            return _Handled(
                NotificationOutcome.IGNORED,
                f"Charge {event.charge_ref} partially refunded ({event.amount_refunded}); access unchanged",
            )

        target = self._refund_target(event)
        if target is None:
            return _Handled(
                NotificationOutcome.WARNING,
                f"Charge {event.charge_ref} matches no course or subscription on record; refund not applied",
            )

        subject_id, course_id, subscription_ref = target
        applied = transitions.refund(
            self.store,
            subject_id,
            course_id,
            refunded_at=event.created,
            customer_ref=event.customer_ref,
            subscription_ref=subscription_ref,
        )
        if not applied:
            return _Handled(
                NotificationOutcome.IGNORED,
                f"Entitlement {subject_id}/{course_id} was bought again after this refund",
            )
        return _Handled(NotificationOutcome.OK, f"Entitlement {subject_id}/{course_id} refunded")

    def _on_unrecognized(self, event: UnrecognizedEvent) -> _Handled:
        return _Handled(NotificationOutcome.IGNORED, f"Unhandled event type {event.event_type}")
