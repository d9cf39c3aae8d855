"""
Billing-lifecycle detail for subscription-mode purchases.

Keyed by the processor's subscription id. Auxiliary to Entitlement: it never
decides access on its own, but refunds are correlated through it and
cancellation reads it.
"""
from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Processor statuses after which a subscription can never become active again
ENDED_SUBSCRIPTION_STATUSES = ("canceled", "incomplete_expired")


class SubscriptionRecord(SQLModel, table=True):
    __tablename__ = "subscription_record"

    id: Optional[int] = Field(default=None, primary_key=True)

    processor_subscription_ref: str = Field(unique=True, index=True)
    subject_id: str = Field(index=True)
    course_id: str = Field(index=True)
    processor_customer_ref: Optional[str] = Field(default=None, nullable=True, index=True)
    processor_price_ref: Optional[str] = Field(default=None, nullable=True)

    # Mirrors the processor's vocabulary: active, trialing, past_due, unpaid, canceled, ...
    status: str
    cancel_at_period_end: bool = Field(default=False)
    current_period_end: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    canceled_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    # When the processor produced the state stored here; older writes are discarded
    last_event_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    updated_at: datetime = Field(
        default_factory=_utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    @property
    def has_ended(self) -> bool:
        return self.status in ENDED_SUBSCRIPTION_STATUSES
