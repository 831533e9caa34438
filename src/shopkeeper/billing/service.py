"""Billing capabilities for a local owner (user, team, ...).

The owner is always passed explicitly as ``owner_ref``. Subscription queries
read only the locally synchronized state; they never call Stripe.
"""

import logging
from typing import Mapping, Optional

from shopkeeper.billing.errors import CustomerNotFound
from shopkeeper.billing.gateway import StripeGateway
from shopkeeper.billing.records import CheckoutSession, CustomerLink, SubscriptionRecord
from shopkeeper.billing.store import BillingStore
from shopkeeper.config import AppConfig
from shopkeeper.db.models import VALID_STATUSES, CheckoutMode

logger = logging.getLogger(__name__)


class BillingService:
    """Checkout, billing portal and subscription queries for owners."""

    def __init__(
        self,
        store: BillingStore,
        gateway: StripeGateway,
        success_url: str = "",
        cancel_url: str = "",
        portal_return_url: str = "",
    ):
        self._store = store
        self._gateway = gateway
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._portal_return_url = portal_return_url

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: BillingStore,
        gateway: StripeGateway,
    ) -> "BillingService":
        return cls(
            store=store,
            gateway=gateway,
            success_url=config.checkout_success_url,
            cancel_url=config.checkout_cancel_url,
            portal_return_url=config.portal_return_url,
        )

    async def get_or_create_customer(
        self,
        owner_ref: str,
        email: Optional[str] = None,
    ) -> str:
        """
        Return the owner's Stripe customer id, creating the customer on first use.

        If two callers race, the first committed link wins and the other
        Stripe customer is left unlinked.

        Raises:
            CustomerConflict: If the new customer is linked to another owner
            stripe.StripeError: On Stripe API errors
        """
        existing = await self._store.get_customer(owner_ref)
        if existing:
            return existing

        created = self._gateway.create_customer(owner_ref, email=email)
        linked = await self._store.link_customer(
            CustomerLink(owner_ref=owner_ref, stripe_customer_id=created)
        )
        if linked != created:
            logger.warning(
                f"Owner {owner_ref} was linked concurrently to {linked}; "
                f"Stripe customer {created} left unlinked"
            )
        return linked

    async def checkout(
        self,
        owner_ref: str,
        prices: Mapping[str, int],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        mode: CheckoutMode = CheckoutMode.SUBSCRIPTION,
        email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Start a Stripe Checkout session for the owner.

        Args:
            owner_ref: Local owner reference
            prices: Stripe price id → quantity
            success_url: Redirect after payment (defaults to configured URL)
            cancel_url: Redirect on cancel (defaults to configured URL)
            metadata: String key/value pairs carried to the webhook, e.g. an
                order id to correlate the purchase with
            mode: Checkout mode
            email: Email used if the Stripe customer must be created

        Returns:
            CheckoutSession with the URL to redirect the owner to

        Raises:
            ValueError: On empty prices, non-positive quantities or missing URLs
            stripe.StripeError: On Stripe API errors
        """
        if not prices:
            raise ValueError("At least one price is required")
        for price, quantity in prices.items():
            if quantity < 1:
                raise ValueError(f"Quantity for {price} must be positive, got {quantity}")

        success_url = success_url or self._success_url
        cancel_url = cancel_url or self._cancel_url
        if not success_url or not cancel_url:
            raise ValueError("checkout_success_url and checkout_cancel_url are required")

        session_metadata = {str(k): str(v) for k, v in (metadata or {}).items()}
        session_metadata["owner_ref"] = owner_ref

        customer_id = await self.get_or_create_customer(owner_ref, email=email)

        return self._gateway.create_checkout_session(
            customer_id=customer_id,
            owner_ref=owner_ref,
            prices=prices,
            success_url=success_url,
            cancel_url=cancel_url,
            mode=mode,
            metadata=session_metadata,
        )

    async def billing_portal_url(
        self,
        owner_ref: str,
        return_url: Optional[str] = None,
    ) -> str:
        """
        Create a Billing Portal session for the owner.

        Raises:
            CustomerNotFound: If the owner has never checked out
            ValueError: If no return URL is given or configured
            stripe.StripeError: On Stripe API errors
        """
        return_url = return_url or self._portal_return_url
        if not return_url:
            raise ValueError("portal_return_url is required")

        customer_id = await self._store.get_customer(owner_ref)
        if not customer_id:
            raise CustomerNotFound(f"Owner {owner_ref} has no Stripe customer")

        return self._gateway.create_portal_session(customer_id, return_url)

    def retrieve_checkout(self, session_id: str) -> CheckoutSession:
        """Fetch a Checkout Session, e.g. on the success redirect."""
        return self._gateway.retrieve_checkout_session(session_id)

    async def subscriptions(self, owner_ref: str) -> list[SubscriptionRecord]:
        return await self._store.list_subscriptions(owner_ref)

    async def subscribed(
        self,
        owner_ref: str,
        product: Optional[str] = None,
        price: Optional[str] = None,
    ) -> bool:
        """True if the owner has an active or trialing subscription matching the filters."""
        for record in await self._store.list_subscriptions(owner_ref):
            if record.status not in VALID_STATUSES:
                continue
            if product is not None and record.product_id != product:
                continue
            if price is not None and record.price_id != price:
                continue
            return True
        return False
