"""
Tests for the Entitlement Store and the Event Log.

Tests cover:
- Upserts keep one row per key
- paid_at only moves on a transition into active
- Refunds and activations are ordered by processor time
- ensure_entitlement never downgrades
- Subscription writes are ordered by processor event time
- Event Log redelivery counting
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from coursepay.models import Entitlement, EntitlementStatus, NotificationOutcome, PaymentStatus, SubscriptionRecord
from coursepay.services.event_log import EventLog
from coursepay.services.events import SubscriptionSnapshot
from coursepay.services.store import EntitlementChange, EntitlementStore

from tests.factories import as_utc, make_subscription

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _count(session: Session, model) -> int:
    return session.exec(select(func.count()).select_from(model)).one()


class TestEntitlementWrites:
    """Tests for write_entitlement / ensure_entitlement."""

    def test_upsert_keeps_single_row(self, store: EntitlementStore, test_session: Session):
        change = EntitlementChange("u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0)
        store.write_entitlement(change)
        store.write_entitlement(change)

        assert _count(test_session, Entitlement) == 1

    def test_paid_at_kept_when_not_activating(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0))
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.PAST_DUE, PaymentStatus.PAST_DUE))

        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.status == EntitlementStatus.PAST_DUE
        assert as_utc(entitlement.paid_at) == T0

    def test_paid_at_kept_on_already_active_row(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0))
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0 + timedelta(days=30),
        ))

        assert as_utc(fetch.entitlement("u1", "c1").paid_at) == T0

    def test_paid_at_moves_when_reentering_active(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0))
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.PAST_DUE, PaymentStatus.PAST_DUE))
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0 + timedelta(days=32),
        ))

        assert as_utc(fetch.entitlement("u1", "c1").paid_at) == T0 + timedelta(days=32)

    def test_activation_paid_before_refund_discarded(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.REFUNDED, PaymentStatus.REFUNDED, refunded_at=T0 + timedelta(days=2),
        ))

        applied = store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0, session_ref="cs_1",
        ))

        assert applied is False
        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.status == EntitlementStatus.REFUNDED
        assert entitlement.paid_at is None
        assert entitlement.processor_session_ref is None

    def test_refund_older_than_purchase_discarded(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0 + timedelta(days=5),
        ))

        applied = store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.REFUNDED, PaymentStatus.REFUNDED, refunded_at=T0 + timedelta(days=2),
        ))

        assert applied is False
        assert fetch.entitlement("u1", "c1").status == EntitlementStatus.ACTIVE

    def test_refs_not_blanked_by_later_write(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID,
            paid_at=T0, customer_ref="cus_1", session_ref="cs_1",
        ))
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID,
            paid_at=T0, subscription_ref="sub_1",
        ))

        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.processor_customer_ref == "cus_1"
        assert entitlement.processor_session_ref == "cs_1"
        assert entitlement.processor_subscription_ref == "sub_1"

    def test_keep_status_applies_only_to_new_rows(self, store: EntitlementStore, fetch):
        store.write_entitlement(
            EntitlementChange("u1", "c1", EntitlementStatus.CANCELED, PaymentStatus.CANCELED),
            keep_status=True,
        )
        assert fetch.entitlement("u1", "c1").status == EntitlementStatus.CANCELED

        store.write_entitlement(EntitlementChange("u1", "c2", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0))
        store.write_entitlement(
            EntitlementChange("u1", "c2", EntitlementStatus.CANCELED, PaymentStatus.CANCELED),
            keep_status=True,
        )
        entitlement = fetch.entitlement("u1", "c2")
        assert entitlement.status == EntitlementStatus.ACTIVE
        assert entitlement.payment_status == PaymentStatus.CANCELED

    def test_preserve_refund(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.REFUNDED, PaymentStatus.REFUNDED))
        store.write_entitlement(
            EntitlementChange("u1", "c1", EntitlementStatus.PAST_DUE, PaymentStatus.PAST_DUE),
            preserve_refund=True,
        )

        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.status == EntitlementStatus.REFUNDED
        assert entitlement.payment_status == PaymentStatus.REFUNDED

    def test_ensure_creates_unpaid_row(self, store: EntitlementStore, fetch):
        store.ensure_entitlement("u1", "c1", session_ref="cs_1")

        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.status == EntitlementStatus.UNPAID
        assert entitlement.paid_at is None
        assert entitlement.processor_session_ref == "cs_1"

    def test_ensure_never_downgrades(self, store: EntitlementStore, fetch):
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0, session_ref="cs_1",
        ))
        store.ensure_entitlement("u1", "c1", session_ref="cs_2")

        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.status == EntitlementStatus.ACTIVE
        assert entitlement.processor_session_ref == "cs_1"

    def test_ensure_updates_session_on_unpaid_row(self, store: EntitlementStore, fetch):
        store.ensure_entitlement("u1", "c1", session_ref="cs_1")
        store.ensure_entitlement("u1", "c1", session_ref="cs_2")

        assert fetch.entitlement("u1", "c1").processor_session_ref == "cs_2"

    def test_has_access(self, store: EntitlementStore):
        assert store.has_access("u1", "c1") is False
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.PAST_DUE, PaymentStatus.PAST_DUE))
        assert store.has_access("u1", "c1") is True
        store.write_entitlement(EntitlementChange("u1", "c1", EntitlementStatus.REFUNDED, PaymentStatus.REFUNDED))
        assert store.has_access("u1", "c1") is False

    def test_find_customer_ref(self, store: EntitlementStore):
        assert store.find_customer_ref("u1") is None
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0, customer_ref="cus_1",
        ))
        assert store.find_customer_ref("u1") == "cus_1"


class TestSubscriptionWrites:
    """Tests for write_subscription ordering."""

    def snapshot(self, status="active", **kwargs) -> SubscriptionSnapshot:
        return SubscriptionSnapshot.from_stripe(make_subscription(status=status, **kwargs))

    def test_insert_then_newer_update(self, store: EntitlementStore, fetch):
        assert store.write_subscription(self.snapshot("active"), T0) is True
        assert store.write_subscription(self.snapshot("past_due"), T0 + timedelta(minutes=1)) is True

        record = fetch.subscription("sub_1")
        assert record.status == "past_due"
        assert as_utc(record.last_event_at) == T0 + timedelta(minutes=1)

    def test_older_update_is_discarded(self, store: EntitlementStore, fetch):
        store.write_subscription(self.snapshot("canceled"), T0)
        assert store.write_subscription(self.snapshot("active"), T0 - timedelta(minutes=5)) is False

        assert fetch.subscription("sub_1").status == "canceled"

    def test_same_second_update_cannot_reopen_ended_subscription(self, store: EntitlementStore, fetch):
        store.write_subscription(self.snapshot("canceled"), T0)
        assert store.write_subscription(self.snapshot("active"), T0) is False

        assert fetch.subscription("sub_1").status == "canceled"

    def test_force_ignores_ordering(self, store: EntitlementStore, fetch):
        store.write_subscription(self.snapshot("active"), T0)
        assert store.write_subscription(self.snapshot("canceled"), T0 - timedelta(hours=1), force=True) is True

        assert fetch.subscription("sub_1").status == "canceled"

    def test_one_row_per_subscription(self, store: EntitlementStore, test_session: Session):
        for minute in range(3):
            store.write_subscription(self.snapshot("active"), T0 + timedelta(minutes=minute))
        assert _count(test_session, SubscriptionRecord) == 1

    def test_uncorrelated_snapshot_is_rejected(self, store: EntitlementStore):
        with pytest.raises(ValueError):
            store.write_subscription(self.snapshot(subject_id=None), T0)

    def test_latest_subscription_for_customer(self, store: EntitlementStore):
        store.write_subscription(self.snapshot(ref="sub_a", customer="cus_9"), T0)
        record = store.latest_subscription_for_customer("cus_9")
        assert record.processor_subscription_ref == "sub_a"
        assert store.latest_subscription_for_customer("cus_unknown") is None

    def test_list_payments_joins_subscription(self, store: EntitlementStore):
        store.write_subscription(self.snapshot(), T0)
        store.write_entitlement(EntitlementChange(
            "u1", "c1", EntitlementStatus.ACTIVE, PaymentStatus.PAID, paid_at=T0, subscription_ref="sub_1",
        ))

        payments = store.list_payments()
        assert len(payments) == 1
        assert payments[0]["subscription_status"] == "active"
        assert payments[0]["status"] == EntitlementStatus.ACTIVE


class TestEventLog:
    """Tests for Event Log idempotency."""

    def test_redelivery_overwrites_and_counts(self, event_log: EventLog, fetch):
        event_log.record("evt_1", "invoice.paid", NotificationOutcome.ERROR, "boom", verified_by="test")
        first = fetch.log_entry("evt_1")
        event_log.record("evt_1", "invoice.paid", NotificationOutcome.OK, "fine", verified_by="test")

        entry = fetch.log_entry("evt_1")
        assert entry.outcome == NotificationOutcome.OK
        assert entry.delivery_count == 2
        assert entry.first_received_at == first.first_received_at
        assert len(fetch.log_entries()) == 1

    def test_replay_does_not_count_delivery(self, event_log: EventLog, fetch):
        event_log.record("evt_1", "invoice.paid", NotificationOutcome.ERROR, verified_by="test")
        event_log.record("evt_1", "invoice.paid", NotificationOutcome.OK, verified_by="test", count_delivery=False)

        assert fetch.log_entry("evt_1").delivery_count == 1

    def test_rejected_bodies_are_namespaced(self, event_log: EventLog, fetch):
        event_log.record("evt_1", "checkout.session.completed", NotificationOutcome.OK, verified_by="test")
        log_id = event_log.record_rejected('{"id": "evt_1", "type": "checkout.session.completed"}', "bad signature")

        assert log_id == "unverified:evt_1"
        assert fetch.log_entry("evt_1").outcome == NotificationOutcome.OK
        rejected = fetch.log_entry("unverified:evt_1")
        assert rejected.verified is False
        assert rejected.outcome == NotificationOutcome.ERROR

    def test_rejected_non_json_is_keyed_by_hash(self, event_log: EventLog):
        log_id = event_log.record_rejected("not json", "bad signature")
        assert log_id.startswith("unverified:")
        assert len(log_id) == len("unverified:") + 64

    def test_list_filters_by_outcome(self, event_log: EventLog):
        event_log.record("evt_1", "a", NotificationOutcome.OK, verified_by="test")
        event_log.record("evt_2", "b", NotificationOutcome.ERROR, verified_by="test")

        errors = event_log.list_entries(outcome=NotificationOutcome.ERROR)
        assert [e.processor_event_id for e in errors] == ["evt_2"]
