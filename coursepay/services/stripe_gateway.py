"""
Stripe integration for checkout, subscriptions and catalog prices.

Services talk to the processor only through the PaymentGateway protocol and
receive plain dicts shaped like Stripe's API objects (the same shape webhook
payloads carry), so tests can swap in an in-memory gateway.
"""
from typing import Any, Optional, Protocol

import stripe
import structlog

from coursepay.core.config import Settings

logger = structlog.get_logger(__name__)

# Upper bound on subscriptions pulled for one customer during restoration
MAX_SUBSCRIPTIONS_PER_CUSTOMER = 500


class PaymentGateway(Protocol):
    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]: ...

    def retrieve_checkout_session(self, session_ref: str) -> dict[str, Any]: ...

    def retrieve_subscription(self, subscription_ref: str) -> dict[str, Any]: ...

    def retrieve_invoice(self, invoice_ref: str) -> dict[str, Any]: ...

    def list_subscriptions(self, customer_ref: str) -> list[dict[str, Any]]: ...

    def find_customer_by_email(self, email: str) -> Optional[str]: ...

    def cancel_at_period_end(self, subscription_ref: str) -> dict[str, Any]: ...

    def create_product(self, name: str, metadata: dict[str, str]) -> dict[str, Any]: ...

    def create_price(
        self,
        product_ref: str,
        unit_amount: int,
        currency: str,
        recurring_interval: Optional[str],
        metadata: dict[str, str],
    ) -> dict[str, Any]: ...


def _as_dict(obj: Any) -> dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


class StripeGateway:
    """PaymentGateway backed by the Stripe API."""

    def __init__(self, settings: Settings):
        settings.require("STRIPE_SECRET_KEY")
        self.client = stripe.StripeClient(
            settings.STRIPE_SECRET_KEY,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        )

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self.client.v1.checkout.sessions.create(params=params)
        logger.info("Stripe checkout session created", session_id=session.id, mode=params.get("mode"))
        return _as_dict(session)

    def retrieve_checkout_session(self, session_ref: str) -> dict[str, Any]:
        return _as_dict(self.client.v1.checkout.sessions.retrieve(session_ref))

    def retrieve_subscription(self, subscription_ref: str) -> dict[str, Any]:
        return _as_dict(self.client.v1.subscriptions.retrieve(subscription_ref))

    def retrieve_invoice(self, invoice_ref: str) -> dict[str, Any]:
        return _as_dict(self.client.v1.invoices.retrieve(invoice_ref))

    def list_subscriptions(self, customer_ref: str) -> list[dict[str, Any]]:
        page = self.client.v1.subscriptions.list(
            params={"customer": customer_ref, "status": "all", "limit": 100}
        )
        subscriptions = []
        for subscription in page.auto_paging_iter():
            subscriptions.append(_as_dict(subscription))
            if len(subscriptions) >= MAX_SUBSCRIPTIONS_PER_CUSTOMER:
                logger.warning("Subscription listing truncated", customer_ref=customer_ref)
                break
        return subscriptions

    def find_customer_by_email(self, email: str) -> Optional[str]:
        customers = self.client.v1.customers.list(params={"email": email, "limit": 1})
        return customers.data[0].id if customers.data else None

    def cancel_at_period_end(self, subscription_ref: str) -> dict[str, Any]:
        subscription = self.client.v1.subscriptions.update(
            subscription_ref, params={"cancel_at_period_end": True}
        )
        return _as_dict(subscription)

    def create_product(self, name: str, metadata: dict[str, str]) -> dict[str, Any]:
        return _as_dict(self.client.v1.products.create(params={"name": name, "metadata": metadata}))

    def create_price(
        self,
        product_ref: str,
        unit_amount: int,
        currency: str,
        recurring_interval: Optional[str],
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "product": product_ref,
            "unit_amount": unit_amount,
            "currency": currency,
            "metadata": metadata,
        }
        if recurring_interval:
            params["recurring"] = {"interval": recurring_interval}
        return _as_dict(self.client.v1.prices.create(params=params))


def get_stripe_gateway(settings: Settings) -> StripeGateway:
    """Get a configured Stripe gateway. Raises ConfigurationError without STRIPE_SECRET_KEY."""
    return StripeGateway(settings)
