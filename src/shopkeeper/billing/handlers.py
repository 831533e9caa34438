"""Event handlers mapping Stripe events onto local billing state.

Handlers are pure: ``(current subscription, event, prefetched subscription)``
in, ``Mutation`` out. They never touch storage or the network.
"""

import logging
from typing import Any, Callable, Optional

from shopkeeper.billing.errors import UnknownEventType
from shopkeeper.billing.events import BillingEvent
from shopkeeper.billing.records import (
    CustomerLink,
    Mutation,
    SubscriptionRecord,
    expandable_id,
    from_timestamp,
)
from shopkeeper.db.models import CheckoutMode, SubscriptionStatus

logger = logging.getLogger(__name__)

Handler = Callable[
    [Optional[SubscriptionRecord], BillingEvent, Optional[dict[str, Any]]],
    Mutation,
]

# Statuses each invoice event may move a subscription out of. Trialing and
# paused subscriptions keep their status on invoice.paid ($0 trial invoices).
PAID_FROM = frozenset(
    {
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    }
)
PAYMENT_FAILED_FROM = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def subscription_id_for(event: BillingEvent) -> Optional[str]:
    """Return the Stripe subscription id an event refers to, if any."""
    obj = event.object

    if event.type.startswith("customer.subscription."):
        return obj.get("id")

    if event.type.startswith("checkout.session."):
        return expandable_id(obj.get("subscription"))

    if event.type.startswith("invoice."):
        subscription = obj.get("subscription")
        if subscription is None:
            # Newer API versions nest it under the invoice parent
            details = (obj.get("parent") or {}).get("subscription_details") or {}
            subscription = details.get("subscription")
        return expandable_id(subscription)

    return None


def customer_id_for(event: BillingEvent) -> Optional[str]:
    """Return the Stripe customer id an event refers to, if any."""
    return expandable_id(event.object.get("customer"))


def lock_key_for(event: BillingEvent) -> str:
    """Entity key serializing concurrent applications of related events."""
    return subscription_id_for(event) or customer_id_for(event) or event.id


def needs_subscription_fetch(event: BillingEvent) -> bool:
    """True if the handler needs the full Stripe subscription prefetched."""
    return (
        event.type == "checkout.session.completed"
        and event.object.get("mode") == CheckoutMode.SUBSCRIPTION.value
        and subscription_id_for(event) is not None
    )


def handle_subscription_changed(
    current: Optional[SubscriptionRecord],
    event: BillingEvent,
    prefetched: Optional[dict[str, Any]],
) -> Mutation:
    """customer.subscription.* carries the whole subscription object."""
    record = SubscriptionRecord.from_stripe(event.object, event.version, event.id)
    if event.type == "customer.subscription.deleted":
        record = record.with_status(SubscriptionStatus.CANCELED, event.version, event.id)
    return Mutation(subscription=record)


def handle_checkout_completed(
    current: Optional[SubscriptionRecord],
    event: BillingEvent,
    prefetched: Optional[dict[str, Any]],
) -> Mutation:
    """Link the owner to the Stripe customer and record the new subscription."""
    obj = event.object
    owner_ref = obj.get("client_reference_id") or event.metadata.get("owner_ref")
    customer_id = customer_id_for(event)

    customer = None
    if owner_ref and customer_id:
        customer = CustomerLink(owner_ref=owner_ref, stripe_customer_id=customer_id)
    else:
        logger.warning(
            f"checkout.session {obj.get('id')} has no owner reference or customer; "
            f"customer link skipped"
        )

    subscription = None
    if prefetched is not None:
        subscription = SubscriptionRecord.from_stripe(prefetched, event.version, event.id)

    return Mutation(customer=customer, subscription=subscription)


def _invoice_period_end(invoice: dict[str, Any]):
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    return from_timestamp((lines[0].get("period") or {}).get("end"))


def _invoice_status_handler(
    status: SubscriptionStatus,
    from_statuses: frozenset[SubscriptionStatus],
) -> Handler:
    def handler(
        current: Optional[SubscriptionRecord],
        event: BillingEvent,
        prefetched: Optional[dict[str, Any]],
    ) -> Mutation:
        if current is None:
            logger.info(
                f"{event.type} for unknown subscription "
                f"{subscription_id_for(event)}; waiting for subscription event"
            )
            return Mutation()
        if current.status not in from_statuses:
            return Mutation()
        return Mutation(
            subscription=current.with_status(
                status, event.version, event.id, _invoice_period_end(event.object)
            )
        )

    handler.__name__ = f"handle_invoice_{status.value}"
    return handler


HANDLERS: dict[str, Handler] = {
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_changed,
    "customer.subscription.paused": handle_subscription_changed,
    "customer.subscription.resumed": handle_subscription_changed,
    "customer.subscription.trial_will_end": handle_subscription_changed,
    "checkout.session.completed": handle_checkout_completed,
    "invoice.paid": _invoice_status_handler(SubscriptionStatus.ACTIVE, PAID_FROM),
    "invoice.payment_failed": _invoice_status_handler(
        SubscriptionStatus.PAST_DUE, PAYMENT_FAILED_FROM
    ),
}


def get_handler(event_type: str) -> Handler:
    """
    Look up the handler for an event type.

    Raises:
        UnknownEventType: If no handler is registered
    """
    try:
        return HANDLERS[event_type]
    except KeyError:
        raise UnknownEventType(event_type) from None
