"""
Course catalog access and Stripe product/price provisioning.
"""
from dataclasses import dataclass
from typing import Optional

import stripe
import structlog
from sqlmodel import Session

from coursepay.core.config import Settings
from coursepay.core.errors import BadRequestError, NotFoundError, ProcessorError
from coursepay.models import Course
from coursepay.services.stripe_gateway import PaymentGateway

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PriceSyncResult:
    course_id: str
    stripe_product_id: str
    stripe_price_id: str
    created: bool


class CatalogService:
    def __init__(self, settings: Settings, session: Session, gateway: Optional[PaymentGateway] = None):
        self.session = session
        self.gateway = gateway
        self.default_currency = settings.DEFAULT_CURRENCY

    def get_course(self, course_id: str) -> Optional[Course]:
        return self.session.get(Course, course_id)

    def require_course(self, course_id: str) -> Course:
        course = self.get_course(course_id)
        if course is None:
            raise NotFoundError(f"Course {course_id} not found")
        return course

    def currency_for(self, course: Course) -> str:
        return (course.currency or self.default_currency).lower()

    def sync_course_price(self, course_id: str) -> PriceSyncResult:
        """
        Make sure the course has a Stripe product and price, creating them if
        missing, and cache their ids on the course.
        """
        course = self.require_course(course_id)
        if course.stripe_product_id and course.stripe_price_id:
            return PriceSyncResult(course.id, course.stripe_product_id, course.stripe_price_id, created=False)

        if not course.price_cents or course.price_cents <= 0:
            raise BadRequestError(f"Course {course_id} has no list price to sync")
        if self.gateway is None:
            raise RuntimeError("CatalogService.sync_course_price needs a payment gateway")

        metadata = {"course_id": course.id}
        try:
            if not course.stripe_product_id:
                product = self.gateway.create_product(course.title, metadata)
                course.stripe_product_id = product["id"]
            price = self.gateway.create_price(
                course.stripe_product_id,
                course.price_cents,
                self.currency_for(course),
                course.billing_interval,
                metadata,
            )
        except stripe.StripeError as e:
            logger.error("Stripe price sync failed", course_id=course_id, error=str(e))
            raise ProcessorError(e.user_message or str(e))

        course.stripe_price_id = price["id"]
        self.session.add(course)
        self.session.commit()
        self.session.refresh(course)

        logger.info(
            "Course price synced",
            course_id=course.id,
            stripe_product_id=course.stripe_product_id,
            stripe_price_id=course.stripe_price_id,
        )
        return PriceSyncResult(course.id, course.stripe_product_id, course.stripe_price_id, created=True)
