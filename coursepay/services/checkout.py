"""
Checkout Session Issuer.

Opens a Stripe-hosted checkout session for (subject, course) with the
correlation metadata every later webhook depends on, and confirms sessions
synchronously when the buyer returns from Stripe.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
import structlog

from coursepay.core.config import Settings
from coursepay.core.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PriceNotConfiguredError,
    ProcessorError,
)
from coursepay.core.jwt import SubjectIdentity
from coursepay.models import Course, Entitlement, EntitlementStatus
from coursepay.services import transitions
from coursepay.services.catalog import CatalogService
from coursepay.services.events import from_unix, metadata_course, metadata_subject, object_ref
from coursepay.services.store import EntitlementStore
from coursepay.services.stripe_gateway import PaymentGateway

logger = structlog.get_logger(__name__)

PAID_SESSION_STATUSES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    session_id: str
    mode: str


def _processor_error(e: stripe.StripeError) -> ProcessorError:
    return ProcessorError(e.user_message or str(e) or "Payment processor error")


def _refunded_by(entitlement: Entitlement, session_id: str, session: dict[str, Any]) -> bool:
    """Whether the refund on record covers the payment made through this session."""
    if entitlement.status != EntitlementStatus.REFUNDED:
        return False
    if entitlement.processor_session_ref == session_id:
        return True
    created = from_unix(session.get("created"))
    refunded_at = entitlement.refunded_at
    if created is None or refunded_at is None:
        return False
    if refunded_at.tzinfo is None:
        refunded_at = refunded_at.replace(tzinfo=timezone.utc)
    return created <= refunded_at


class CheckoutService:
    def __init__(
        self,
        settings: Settings,
        store: EntitlementStore,
        catalog: CatalogService,
        gateway: PaymentGateway,
    ):
        settings.require()
        self.store = store
        self.catalog = catalog
        self.gateway = gateway
        self.site_url = settings.SITE_URL.rstrip("/")
        self.fallback_price_cents = settings.FALLBACK_PRICE_CENTS

    def resolve_line_item(self, course: Course, price_id: Optional[str] = None) -> dict[str, Any]:
        """
        Pick the price for a course: explicit price id, then the cached Stripe
        price, then an inline price from the list price, then the fallback.
        """
        if price_id:
            return {"price": price_id, "quantity": 1}
        if course.stripe_price_id:
            return {"price": course.stripe_price_id, "quantity": 1}

        amount = course.price_cents
        if amount is None or amount <= 0:
            if self.fallback_price_cents <= 0:
                raise PriceNotConfiguredError(f"Course {course.id} has no price configured")
            logger.warning(
                "Course has no price data, using fallback price",
                course_id=course.id,
                unit_amount=self.fallback_price_cents,
            )
            amount = self.fallback_price_cents

        price_data: dict[str, Any] = {
            "currency": self.catalog.currency_for(course),
            "unit_amount": amount,
            "product_data": {"name": course.title, "metadata": {"course_id": course.id}},
        }
        if course.is_subscription:
            price_data["recurring"] = {"interval": course.billing_interval}
        return {"price_data": price_data, "quantity": 1}

    def _redirect_urls(self, course: Course, success_url: Optional[str], cancel_url: Optional[str]) -> tuple[str, str]:
        if self.site_url:
            success_url = success_url or f"{self.site_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}"
            cancel_url = cancel_url or f"{self.site_url}/courses/{course.id}"
        if not success_url or not cancel_url:
            raise BadRequestError("success_url and cancel_url are required when SITE_URL is not configured")
        return success_url, cancel_url

    def create_checkout(
        self,
        subject: Optional[SubjectIdentity],
        course_id: Optional[str],
        price_id: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        if subject is None:
            raise AuthenticationError("Not authenticated")
        if not course_id:
            raise BadRequestError("course_id is required")

        course = self.catalog.require_course(course_id)
        if self.store.has_access(subject.subject_id, course.id):
            raise ConflictError("You already have access to this course")

        success_url, cancel_url = self._redirect_urls(course, success_url, cancel_url)
        line_item = self.resolve_line_item(course, price_id)
        mode = "subscription" if course.is_subscription else "payment"

        metadata = {"subject_id": subject.subject_id, "course_id": course.id}
        params: dict[str, Any] = {
            "mode": mode,
            "line_items": [line_item],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": subject.subject_id,
            "metadata": metadata,
        }
        # Subscription lifecycle events carry the subscription, not the session
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        customer_ref = self.store.find_customer_ref(subject.subject_id)
        if customer_ref:
            params["customer"] = customer_ref
        else:
            if subject.email:
                params["customer_email"] = subject.email
            if mode == "payment":
                # One-time payments only get a customer when asked; restoration needs one
                params["customer_creation"] = "always"

        try:
            session = self.gateway.create_checkout_session(params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout creation failed", course_id=course.id, error=str(e))
            raise _processor_error(e)

        self.store.ensure_entitlement(subject.subject_id, course.id, session_ref=session["id"])
        logger.info(
            "Checkout session issued",
            subject_id=subject.subject_id,
            course_id=course.id,
            session_id=session["id"],
            mode=mode,
        )
        return CheckoutResult(url=session["url"], session_id=session["id"], mode=mode)

    def verify_checkout(self, subject: SubjectIdentity, session_id: str, course_id: str) -> None:
        """
        Confirm a returning buyer's session and unlock the course without
        waiting for the webhook. Applies the same transition the webhook would.
        """
        if not session_id or not course_id:
            raise BadRequestError("session_id and course_id are required")

        try:
            session = self.gateway.retrieve_checkout_session(session_id)
        except stripe.InvalidRequestError:
            raise NotFoundError(f"Checkout session {session_id} not found")
        except stripe.StripeError as e:
            raise _processor_error(e)

        metadata = session.get("metadata") or {}
        if metadata_subject(metadata) != subject.subject_id or metadata_course(metadata) != course_id:
            logger.warning(
                "Checkout session does not belong to caller",
                session_id=session_id,
                subject_id=subject.subject_id,
                course_id=course_id,
            )
            raise ForbiddenError("This checkout session does not belong to you or this course")

        if session.get("payment_status") not in PAID_SESSION_STATUSES:
            raise ConflictError("Payment has not completed for this checkout session")

        existing = self.store.get_entitlement(subject.subject_id, course_id)
        if existing is not None and existing.status == EntitlementStatus.ACTIVE:
            # Webhook got there first; keep its paid_at
            return
        if existing is not None and _refunded_by(existing, session_id, session):
            logger.warning(
                "Refunded checkout session presented for verification",
                session_id=session_id,
                subject_id=subject.subject_id,
                course_id=course_id,
            )
            raise ConflictError("The payment for this checkout session was refunded")

        activated = transitions.activate(
            self.store,
            subject.subject_id,
            course_id,
            paid_at=datetime.now(timezone.utc),
            customer_ref=object_ref(session.get("customer")),
            subscription_ref=object_ref(session.get("subscription")),
            session_ref=session_id,
        )
        if not activated:
            raise ConflictError("The payment for this checkout session was refunded")
        logger.info("Checkout verified", subject_id=subject.subject_id, course_id=course_id, session_id=session_id)
