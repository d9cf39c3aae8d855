"""
Entitlement: does a subject have access to a course.

This table is the single source of truth for access. One row per
(subject_id, course_id); rows are only ever upserted, never deleted, so
cancellations and refunds remain visible as status transitions.
"""
from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStatus:
    """Access state."""

    UNPAID = "unpaid"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    REFUNDED = "refunded"

    ALL = (UNPAID, ACTIVE, PAST_DUE, CANCELED, REFUNDED)
    # past_due keeps access while the processor retries the payment
    GRANTS_ACCESS = (ACTIVE, PAST_DUE)


class PaymentStatus:
    """Billing state; differs from access when a deleted subscription keeps access."""

    UNPAID = "unpaid"
    PAID = "paid"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class Entitlement(SQLModel, table=True):
    __tablename__ = "entitlement"
    __table_args__ = (
        UniqueConstraint("subject_id", "course_id", name="uq_entitlement_subject_course"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    subject_id: str = Field(index=True)
    course_id: str = Field(index=True)

    status: str = Field(default=EntitlementStatus.UNPAID)
    payment_status: str = Field(default=PaymentStatus.UNPAID)

    # Written only when the row transitions into active
    paid_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    # Processor time of the refund; payments older than this cannot reactivate the row
    refunded_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    # Processor correlation ids, last writer wins
    processor_customer_ref: Optional[str] = Field(default=None, nullable=True, index=True)
    processor_subscription_ref: Optional[str] = Field(default=None, nullable=True)
    processor_session_ref: Optional[str] = Field(default=None, nullable=True)

    created_at: datetime = Field(
        default_factory=_utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=_utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    @property
    def has_access(self) -> bool:
        return self.status in EntitlementStatus.GRANTS_ACCESS
