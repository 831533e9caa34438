"""Thin wrapper over the Stripe SDK calls Shopkeeper makes."""

import logging
from typing import Any, Mapping, Optional

import stripe

from shopkeeper.billing.records import CheckoutSession
from shopkeeper.config import AppConfig
from shopkeeper.db.models import CheckoutMode

logger = logging.getLogger(__name__)


def to_plain(obj: Any) -> dict[str, Any]:
    """Convert a StripeObject (or dict) to a plain dict."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Stripe API calls, authenticated per call with the configured key.

    All methods raise ``stripe.StripeError`` on API errors.
    """

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("stripe_secret not configured")
        self._api_key = api_key

    @classmethod
    def from_config(cls, config: AppConfig) -> "StripeGateway":
        return cls(config.stripe_secret.get_secret_value())

    def create_customer(
        self,
        owner_ref: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """Create a Stripe customer tagged with the owner reference."""
        params: dict[str, Any] = {"metadata": {"owner_ref": owner_ref}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name

        customer = stripe.Customer.create(api_key=self._api_key, **params)
        logger.info(f"Created Stripe customer {customer.id} for owner {owner_ref}")
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        owner_ref: str,
        prices: Mapping[str, int],
        success_url: str,
        cancel_url: str,
        mode: CheckoutMode = CheckoutMode.SUBSCRIPTION,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a Checkout Session for the given price → quantity map.

        The owner reference travels as client_reference_id, and metadata is
        copied onto the resulting subscription in subscription mode.
        """
        session_metadata = dict(metadata or {})
        params: dict[str, Any] = {
            "mode": mode.value,
            "customer": customer_id,
            "client_reference_id": owner_ref,
            "line_items": [
                {"price": price, "quantity": quantity}
                for price, quantity in prices.items()
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": session_metadata,
        }
        if mode is CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": session_metadata}

        session = CheckoutSession.from_stripe(
            to_plain(stripe.checkout.Session.create(api_key=self._api_key, **params))
        )
        logger.info(f"Created checkout session {session.id} for owner {owner_ref}")
        return session

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a Billing Portal session and return its URL."""
        session = stripe.billing_portal.Session.create(
            api_key=self._api_key,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        return CheckoutSession.from_stripe(to_plain(session))

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = stripe.Subscription.retrieve(
            subscription_id, api_key=self._api_key
        )
        return to_plain(subscription)
