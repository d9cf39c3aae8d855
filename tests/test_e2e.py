"""
End-to-end purchase flows through the HTTP API.
"""

from datetime import datetime, timedelta, timezone

from coursepay.models import EntitlementStatus, PaymentStatus

from tests.factories import as_utc, make_checkout_session, make_event, make_subscription, signed

API = "/api/v1"
PAID_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def post_webhook(client, event):
    body, signature = signed(event)
    return client.post(f"{API}/webhooks/stripe", content=body, headers={"stripe-signature": signature})


class TestOneTimePurchase:
    def test_checkout_then_webhook_unlocks_course(self, client, auth_headers, one_time_course, fetch):
        response = client.post(f"{API}/billing/checkout", json={"course_id": "c1"}, headers=auth_headers())
        session_id = response.json()["session_id"]

        pending = fetch.entitlement("u1", "c1")
        assert pending.status == EntitlementStatus.UNPAID
        assert client.get(f"{API}/billing/access/c1", headers=auth_headers()).json()["has_access"] is False

        completed = make_event(
            "checkout.session.completed", make_checkout_session(session_id), event_id="evt_paid", created=PAID_AT
        )
        assert post_webhook(client, completed).status_code == 200

        entitlement = fetch.entitlement("u1", "c1")
        assert entitlement.status == EntitlementStatus.ACTIVE
        assert entitlement.payment_status == PaymentStatus.PAID
        assert as_utc(entitlement.paid_at) == PAID_AT
        assert entitlement.processor_session_ref == session_id
        assert client.get(f"{API}/billing/access/c1", headers=auth_headers()).json()["has_access"] is True

        # Stripe redelivers; nothing changes
        assert post_webhook(client, completed).status_code == 200
        assert fetch.entitlement("u1", "c1").paid_at == entitlement.paid_at
        assert fetch.log_entry("evt_paid").delivery_count == 2

    def test_webhook_then_verify_keeps_webhook_paid_at(self, client, auth_headers, one_time_course, gateway, fetch):
        session_id = client.post(
            f"{API}/billing/checkout", json={"course_id": "c1"}, headers=auth_headers()
        ).json()["session_id"]
        gateway.sessions[session_id]["payment_status"] = "paid"

        post_webhook(client, make_event(
            "checkout.session.completed", make_checkout_session(session_id), created=PAID_AT
        ))
        response = client.post(
            f"{API}/billing/verify-checkout",
            json={"session_id": session_id, "course_id": "c1"},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        assert as_utc(fetch.entitlement("u1", "c1").paid_at) == PAID_AT


class TestSubscriptionLifecycle:
    def test_subscribe_fall_behind_recover_end(self, client, auth_headers, subscription_course, gateway, fetch):
        client.post(f"{API}/billing/checkout", json={"course_id": "c2"}, headers=auth_headers())

        subscription = make_subscription("sub_9", course_id="c2")
        gateway.subscriptions["sub_9"] = subscription
        post_webhook(client, make_event(
            "customer.subscription.created", subscription, event_id="evt_1", created=PAID_AT,
        ))
        post_webhook(client, make_event(
            "checkout.session.completed",
            make_checkout_session("cs_test_1", course_id="c2", subscription="sub_9", mode="subscription"),
            event_id="evt_2",
            created=PAID_AT,
        ))
        assert fetch.entitlement("u1", "c2").status == EntitlementStatus.ACTIVE

        post_webhook(client, make_event(
            "customer.subscription.updated", make_subscription("sub_9", course_id="c2", status="past_due"),
            event_id="evt_3", created=PAID_AT + timedelta(days=30),
        ))
        assert fetch.entitlement("u1", "c2").status == EntitlementStatus.PAST_DUE

        post_webhook(client, make_event(
            "invoice.paid", {"id": "in_2", "subscription": "sub_9", "customer": "cus_1"},
            event_id="evt_4", created=PAID_AT + timedelta(days=32),
        ))
        recovered = fetch.entitlement("u1", "c2")
        assert recovered.status == EntitlementStatus.ACTIVE
        assert as_utc(recovered.paid_at) == PAID_AT + timedelta(days=32)

        ended = make_subscription("sub_9", course_id="c2", status="canceled")
        post_webhook(client, make_event(
            "customer.subscription.deleted", ended, event_id="evt_5", created=PAID_AT + timedelta(days=90),
        ))
        final = fetch.entitlement("u1", "c2")
        assert final.payment_status == PaymentStatus.CANCELED
        assert final.processor_subscription_ref == "sub_9"
        assert fetch.subscription("sub_9").status == "canceled"
