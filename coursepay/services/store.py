"""
Entitlement Store: durable (subject, course) -> access state.

Every write is an upsert keyed on natural identity, so replayed or concurrent
notifications converge on the same row instead of duplicating it. Writes
replace the state fields with the incoming values. paid_at is only written on
a transition into active, and a missing correlation ref never blanks a stored
one. Refunds and activations are ordered by processor time, so a late or
redelivered payment event cannot undo a refund.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

import structlog
from sqlalchemy import and_, case, func, or_
from sqlmodel import Session, select

from coursepay.core.db_utils import db_retry, upsert
from coursepay.models import (
    ENDED_SUBSCRIPTION_STATUSES,
    Entitlement,
    EntitlementStatus,
    PaymentStatus,
    SubscriptionRecord,
)
from coursepay.services.events import SubscriptionSnapshot

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REF_COLUMNS = ("processor_customer_ref", "processor_subscription_ref", "processor_session_ref")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EntitlementChange:
    """Full new state of one entitlement row."""

    subject_id: str
    course_id: str
    status: str
    payment_status: str
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    session_ref: Optional[str] = None


def _activation_is_after_refund(table, excluded):
    """An activation only replaces a refunded row when it was paid after the refund."""
    return or_(
        table.c.status != EntitlementStatus.REFUNDED,
        table.c.refunded_at.is_(None),
        table.c.refunded_at < excluded.paid_at,
    )


def _refund_is_after_activation(table, excluded):
    """A refund only revokes an entitled row when it is not older than the purchase."""
    return or_(
        table.c.status.notin_(EntitlementStatus.GRANTS_ACCESS),
        table.c.paid_at.is_(None),
        table.c.paid_at <= excluded.refunded_at,
    )


def _subscription_is_newer(table, excluded):
    """
    Conditional-update guard for subscription rows.

    The processor's event time decides, not arrival order. On a tie an ended
    subscription is only overwritten by another ended state, so a same-second
    "updated" cannot undo a "deleted".
    """
    stored_at = table.c.last_event_at
    return or_(
        stored_at.is_(None),
        stored_at < excluded.last_event_at,
        and_(
            stored_at == excluded.last_event_at,
            or_(
                table.c.status.notin_(ENDED_SUBSCRIPTION_STATUSES),
                excluded.status.in_(ENDED_SUBSCRIPTION_STATUSES),
            ),
        ),
    )


class EntitlementStore:
    def __init__(self, session: Session):
        self.session = session

    @db_retry()
    def _write(self, operation: Callable[[], T]) -> T:
        try:
            result = operation()
            self.session.commit()
            return result
        except Exception:
            self.session.rollback()
            raise

    def rollback(self) -> None:
        self.session.rollback()

    # ---- entitlements ----

    def get_entitlement(self, subject_id: str, course_id: str) -> Optional[Entitlement]:
        return self.session.exec(
            select(Entitlement).where(
                Entitlement.subject_id == subject_id,
                Entitlement.course_id == course_id,
            )
        ).first()

    def list_entitlements(self, subject_id: str) -> list[Entitlement]:
        return list(self.session.exec(
            select(Entitlement)
            .where(Entitlement.subject_id == subject_id)
            .order_by(Entitlement.course_id)
        ).all())

    def has_access(self, subject_id: str, course_id: str) -> bool:
        entitlement = self.get_entitlement(subject_id, course_id)
        return entitlement is not None and entitlement.has_access

    def ensure_entitlement(self, subject_id: str, course_id: str, session_ref: Optional[str] = None) -> None:
        """
        Create an unpaid row if none exists.

        An existing unpaid row only picks up the new checkout session id; rows in
        any other state are left alone, so starting a second checkout never
        downgrades a purchase.
        """
        now = _utc_now()
        values = {
            "subject_id": subject_id,
            "course_id": course_id,
            "status": EntitlementStatus.UNPAID,
            "payment_status": PaymentStatus.UNPAID,
            "processor_session_ref": session_ref,
            "created_at": now,
            "updated_at": now,
        }
        self._write(lambda: upsert(
            self.session,
            Entitlement,
            values,
            ["subject_id", "course_id"],
            keep_on_conflict=["status", "payment_status", "created_at"],
            where=lambda table, excluded: table.c.status == EntitlementStatus.UNPAID,
        ))

    def write_entitlement(
        self,
        change: EntitlementChange,
        *,
        keep_status: bool = False,
        preserve_refund: bool = False,
    ) -> bool:
        """
        Upsert the entitlement to ``change``.

        Correlation refs are last-non-null-writer-wins, so an event that does
        not carry one (e.g. invoice.paid has no session) keeps the stored ref.
        paid_at only moves when the row enters active; an already active row
        keeps its purchase date. ``keep_status`` leaves an existing row's
        access status as stored (the incoming status only applies to a new
        row). ``preserve_refund`` leaves a refunded row refunded.

        Refunds and activations are ordered by processor time: an activation
        paid before the stored refund leaves the refunded row alone, and a
        refund older than the stored activation does not revoke it.

        Returns False when the ordering check discarded the write.
        """
        now = _utc_now()
        values = {
            "subject_id": change.subject_id,
            "course_id": change.course_id,
            "status": change.status,
            "payment_status": change.payment_status,
            "paid_at": change.paid_at,
            "refunded_at": change.refunded_at,
            "processor_customer_ref": change.customer_ref,
            "processor_subscription_ref": change.subscription_ref,
            "processor_session_ref": change.session_ref,
            "created_at": now,
            "updated_at": now,
        }
        keep = ["created_at"]
        if change.paid_at is None:
            keep.append("paid_at")
        if change.refunded_at is None:
            keep.append("refunded_at")
        if keep_status:
            keep.append("status")

        def merge(table, excluded):
            merged = {
                column: func.coalesce(excluded[column], table.c[column])
                for column in REF_COLUMNS
            }
            if change.paid_at is not None:
                merged["paid_at"] = case(
                    (table.c.status == EntitlementStatus.ACTIVE, func.coalesce(table.c.paid_at, excluded.paid_at)),
                    else_=excluded.paid_at,
                )
            if preserve_refund:
                refunded = table.c.status == EntitlementStatus.REFUNDED
                for column in ("payment_status",) if keep_status else ("status", "payment_status"):
                    merged[column] = case((refunded, table.c[column]), else_=excluded[column])
            return merged

        where = None
        if change.status == EntitlementStatus.ACTIVE and change.paid_at is not None:
            where = _activation_is_after_refund
        elif change.status == EntitlementStatus.REFUNDED and change.refunded_at is not None:
            where = _refund_is_after_activation

        rows = self._write(lambda: upsert(
            self.session,
            Entitlement,
            values,
            ["subject_id", "course_id"],
            keep_on_conflict=keep,
            set_on_conflict=merge,
            where=where,
        ))

        applied = rows > 0
        if not applied:
            logger.info(
                "Entitlement write discarded, stored state is newer",
                subject_id=change.subject_id,
                course_id=change.course_id,
                status=change.status,
            )
            return False

        logger.info(
            "Entitlement written",
            subject_id=change.subject_id,
            course_id=change.course_id,
            status=change.status,
            payment_status=change.payment_status,
        )
        return True

    def find_customer_ref(self, subject_id: str) -> Optional[str]:
        """Most recently written processor customer id known for the subject."""
        customer_ref = self.session.exec(
            select(Entitlement.processor_customer_ref)
            .where(
                Entitlement.subject_id == subject_id,
                Entitlement.processor_customer_ref.is_not(None),
            )
            .order_by(Entitlement.updated_at.desc())
        ).first()
        if customer_ref:
            return customer_ref

        return self.session.exec(
            select(SubscriptionRecord.processor_customer_ref)
            .where(
                SubscriptionRecord.subject_id == subject_id,
                SubscriptionRecord.processor_customer_ref.is_not(None),
            )
            .order_by(SubscriptionRecord.updated_at.desc())
        ).first()

    # ---- subscriptions ----

    def get_subscription(self, subscription_ref: str) -> Optional[SubscriptionRecord]:
        return self.session.exec(
            select(SubscriptionRecord).where(
                SubscriptionRecord.processor_subscription_ref == subscription_ref
            )
        ).first()

    def find_subscription(self, subject_id: str, course_id: str) -> Optional[SubscriptionRecord]:
        return self.session.exec(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.subject_id == subject_id,
                SubscriptionRecord.course_id == course_id,
            )
            .order_by(SubscriptionRecord.updated_at.desc())
        ).first()

    def latest_subscription_for_customer(self, customer_ref: str) -> Optional[SubscriptionRecord]:
        return self.session.exec(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.processor_customer_ref == customer_ref)
            .order_by(SubscriptionRecord.updated_at.desc())
        ).first()

    def write_subscription(
        self,
        snapshot: SubscriptionSnapshot,
        event_at: datetime,
        force: bool = False,
    ) -> bool:
        """
        Upsert the subscription row from a processor snapshot taken at ``event_at``.

        Returns False when a newer state is already stored and the write was
        discarded. ``force`` skips the ordering check (terminal events).
        """
        if not snapshot.has_correlation:
            raise ValueError(f"Subscription {snapshot.ref} has no subject/course metadata")

        values = {
            "processor_subscription_ref": snapshot.ref,
            "subject_id": snapshot.subject_id,
            "course_id": snapshot.course_id,
            "processor_customer_ref": snapshot.customer_ref,
            "processor_price_ref": snapshot.price_ref,
            "status": snapshot.status,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "current_period_end": snapshot.current_period_end,
            "canceled_at": snapshot.canceled_at,
            "last_event_at": event_at,
            "updated_at": _utc_now(),
        }
        rows = self._write(lambda: upsert(
            self.session,
            SubscriptionRecord,
            values,
            ["processor_subscription_ref"],
            where=None if force else _subscription_is_newer,
        ))

        applied = rows > 0
        if not applied:
            logger.info(
                "Stale subscription state discarded",
                subscription_ref=snapshot.ref,
                status=snapshot.status,
                event_at=event_at.isoformat(),
            )
        return applied

    # ---- audit ----

    def list_payments(self, limit: int = 200) -> list[dict[str, Any]]:
        """Entitlements with their subscription state, most recently changed first."""
        rows = self.session.exec(
            select(Entitlement, SubscriptionRecord)
            .join(
                SubscriptionRecord,
                SubscriptionRecord.processor_subscription_ref == Entitlement.processor_subscription_ref,
                isouter=True,
            )
            .order_by(Entitlement.updated_at.desc())
            .limit(limit)
        ).all()

        return [
            {
                "subject_id": entitlement.subject_id,
                "course_id": entitlement.course_id,
                "status": entitlement.status,
                "payment_status": entitlement.payment_status,
                "paid_at": entitlement.paid_at.isoformat() if entitlement.paid_at else None,
                "refunded_at": entitlement.refunded_at.isoformat() if entitlement.refunded_at else None,
                "customer_ref": entitlement.processor_customer_ref,
                "subscription_ref": entitlement.processor_subscription_ref,
                "session_ref": entitlement.processor_session_ref,
                "subscription_status": subscription.status if subscription else None,
                "cancel_at_period_end": subscription.cancel_at_period_end if subscription else None,
                "current_period_end": (
                    subscription.current_period_end.isoformat()
                    if subscription and subscription.current_period_end
                    else None
                ),
                "updated_at": entitlement.updated_at.isoformat(),
            }
            for entitlement, subscription in rows
        ]
