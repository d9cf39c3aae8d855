"""
Course catalog rows as seen by billing.

The catalog itself is owned elsewhere; billing reads the list price and
caches the processor's product/price ids here once they exist.
"""
from typing import Optional
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Course(SQLModel, table=True):
    __tablename__ = "course"

    id: str = Field(primary_key=True)
    title: str = Field(default="Course")

    # List price; None when the catalog has no price for the course yet
    price_cents: Optional[int] = Field(default=None, nullable=True)
    currency: Optional[str] = Field(default=None, nullable=True)  # falls back to DEFAULT_CURRENCY

    # None = one-time purchase, "month"/"year" = subscription
    billing_interval: Optional[str] = Field(default=None, nullable=True)

    # Cached Stripe references
    stripe_product_id: Optional[str] = Field(default=None, nullable=True)
    stripe_price_id: Optional[str] = Field(default=None, nullable=True)

    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_subscription(self) -> bool:
        return self.billing_interval is not None
