"""
Typed view of Stripe webhook events.

Stripe payloads are untyped JSON. parse_event() turns a verified payload into
one variant of a closed set of event classes; every event type we do not
handle becomes UnrecognizedEvent, so the dispatcher never sees a shape it
does not know.

Handles both the pre-2025 and current Stripe API shapes for the fields that
moved (invoice.subscription, subscription.current_period_end).
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

# Metadata keys attached by the checkout issuer. Sessions created by the
# previous storefront used "user_id" for the subject.
SUBJECT_METADATA_KEYS = ("subject_id", "user_id")
COURSE_METADATA_KEY = "course_id"


def from_unix(value: Any) -> Optional[datetime]:
    """Stripe timestamps are unix seconds."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def object_ref(value: Any) -> Optional[str]:
    """Expandable Stripe fields are either an id string or the expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def metadata_subject(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    metadata = metadata or {}
    for key in SUBJECT_METADATA_KEYS:
        if metadata.get(key):
            return str(metadata[key])
    return None


def metadata_course(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    value = (metadata or {}).get(COURSE_METADATA_KEY)
    return str(value) if value else None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields of a Stripe subscription object billing cares about."""

    ref: str
    status: str
    subject_id: Optional[str]
    course_id: Optional[str]
    customer_ref: Optional[str]
    price_ref: Optional[str]
    cancel_at_period_end: bool
    current_period_end: Optional[datetime]
    canceled_at: Optional[datetime]
    started_at: Optional[datetime]

    @property
    def has_correlation(self) -> bool:
        return bool(self.subject_id and self.course_id)

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "SubscriptionSnapshot":
        if not obj.get("id"):
            raise ValueError("Subscription object without an id")

        metadata = obj.get("metadata") or {}
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        # Moved from the subscription to its items in newer API versions
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        return cls(
            ref=obj["id"],
            status=obj.get("status") or "unknown",
            subject_id=metadata_subject(metadata),
            course_id=metadata_course(metadata),
            customer_ref=object_ref(obj.get("customer")),
            price_ref=object_ref(price),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            current_period_end=from_unix(period_end),
            canceled_at=from_unix(obj.get("canceled_at")),
            started_at=from_unix(obj.get("start_date") or obj.get("created")),
        )


@dataclass(frozen=True)
class ProcessorEvent:
    event_id: str
    event_type: str
    created: datetime
    livemode: bool


@dataclass(frozen=True)
class CheckoutCompleted(ProcessorEvent):
    session_ref: str
    subject_id: Optional[str]
    course_id: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    payment_status: Optional[str]
    mode: Optional[str]

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")


@dataclass(frozen=True)
class InvoicePaid(ProcessorEvent):
    invoice_ref: str
    subscription_ref: Optional[str]
    customer_ref: Optional[str]


@dataclass(frozen=True)
class SubscriptionChanged(ProcessorEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted(ProcessorEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class ChargeRefunded(ProcessorEvent):
    charge_ref: str
    customer_ref: Optional[str]
    amount_refunded: int
    fully_refunded: bool
    # Copied from the payment intent metadata set at checkout; absent on invoice charges
    subject_id: Optional[str] = None
    course_id: Optional[str] = None
    invoice_ref: Optional[str] = None
    subscription_ref: Optional[str] = None

    @property
    def has_correlation(self) -> bool:
        return bool(self.subject_id and self.course_id)


@dataclass(frozen=True)
class UnrecognizedEvent(ProcessorEvent):
    pass


def invoice_subscription_ref(invoice: Mapping[str, Any]) -> Optional[str]:
    ref = object_ref(invoice.get("subscription"))
    if ref:
        return ref
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return object_ref(details.get("subscription"))


def _parse_checkout(base: dict, obj: Mapping[str, Any]) -> CheckoutCompleted:
    metadata = obj.get("metadata") or {}
    return CheckoutCompleted(
        **base,
        session_ref=obj.get("id") or "",
        subject_id=metadata_subject(metadata),
        course_id=metadata_course(metadata),
        customer_ref=object_ref(obj.get("customer")),
        subscription_ref=object_ref(obj.get("subscription")),
        payment_status=obj.get("payment_status"),
        mode=obj.get("mode"),
    )


def _parse_invoice_paid(base: dict, obj: Mapping[str, Any]) -> InvoicePaid:
    return InvoicePaid(
        **base,
        invoice_ref=obj.get("id") or "",
        subscription_ref=invoice_subscription_ref(obj),
        customer_ref=object_ref(obj.get("customer")),
    )


def _parse_subscription_changed(base: dict, obj: Mapping[str, Any]) -> SubscriptionChanged:
    return SubscriptionChanged(**base, subscription=SubscriptionSnapshot.from_stripe(obj))


def _parse_subscription_deleted(base: dict, obj: Mapping[str, Any]) -> SubscriptionDeleted:
    return SubscriptionDeleted(**base, subscription=SubscriptionSnapshot.from_stripe(obj))


def _parse_charge_refunded(base: dict, obj: Mapping[str, Any]) -> ChargeRefunded:
    metadata = obj.get("metadata") or {}
    payment_intent = obj.get("payment_intent")
    if not metadata_course(metadata) and isinstance(payment_intent, Mapping):
        metadata = payment_intent.get("metadata") or {}

    invoice = obj.get("invoice")
    return ChargeRefunded(
        **base,
        charge_ref=obj.get("id") or "",
        customer_ref=object_ref(obj.get("customer")),
        amount_refunded=int(obj.get("amount_refunded") or 0),
        fully_refunded=bool(obj.get("refunded")),
        subject_id=metadata_subject(metadata),
        course_id=metadata_course(metadata),
        invoice_ref=object_ref(invoice),
        subscription_ref=invoice_subscription_ref(invoice) if isinstance(invoice, Mapping) else None,
    )


EVENT_PARSERS = {
    "checkout.session.completed": _parse_checkout,
    # Delayed payment methods (bank debits) settle after the session completes
    "checkout.session.async_payment_succeeded": _parse_checkout,
    "invoice.paid": _parse_invoice_paid,
    "customer.subscription.created": _parse_subscription_changed,
    "customer.subscription.updated": _parse_subscription_changed,
    "customer.subscription.deleted": _parse_subscription_deleted,
    "charge.refunded": _parse_charge_refunded,
}


def parse_event(payload: Mapping[str, Any]) -> ProcessorEvent:
    """
    Build the typed event for a verified Stripe event payload.

    Raises ValueError when a handled event type carries an object that cannot
    be interpreted (e.g. a subscription without an id).
    """
    event_type = str(payload.get("type") or "")
    base = {
        "event_id": str(payload.get("id") or ""),
        "event_type": event_type,
        "created": from_unix(payload.get("created")) or datetime.now(timezone.utc),
        "livemode": bool(payload.get("livemode")),
    }

    parser = EVENT_PARSERS.get(event_type)
    if parser is None:
        return UnrecognizedEvent(**base)

    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, Mapping):
        raise ValueError(f"{event_type} event without a data.object")
    return parser(base, obj)
