"""Canonical billing records and synchronization results."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from shopkeeper.billing.errors import MalformedPayload
from shopkeeper.db.models import STATUS_RANK, SubscriptionStatus


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe epoch timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass(frozen=True)
class CustomerLink:
    """Local owner ↔ Stripe customer link."""

    owner_ref: str
    stripe_customer_id: str


@dataclass(frozen=True)
class SubscriptionRecord:
    """Locally persisted view of a Stripe subscription."""

    stripe_subscription_id: str
    stripe_customer_id: str
    status: SubscriptionStatus
    version: int  # event.created of the last applied event
    product_id: str | None = None
    price_id: str | None = None
    quantity: int = 1
    current_period_end: datetime | None = None  # UTC
    trial_end: datetime | None = None  # UTC
    cancel_at_period_end: bool = False
    last_event_id: str = ""

    @property
    def ordering_key(self) -> tuple[int, int, str]:
        """Total order of record states; higher keys supersede lower ones."""
        return (self.version, STATUS_RANK[self.status], self.last_event_id)

    @classmethod
    def from_stripe(
        cls,
        obj: dict[str, Any],
        version: int,
        event_id: str = "",
    ) -> "SubscriptionRecord":
        """
        Build a record from a Stripe Subscription object.

        Only the first subscription item is tracked.

        Raises:
            MalformedPayload: If id, customer or status is missing or unknown
        """
        subscription_id = obj.get("id")
        customer_id = expandable_id(obj.get("customer"))
        if not subscription_id or not customer_id:
            raise MalformedPayload("Subscription object missing id or customer")

        try:
            status = SubscriptionStatus(obj.get("status"))
        except ValueError:
            raise MalformedPayload(
                f"Unknown subscription status {obj.get('status')!r}"
            ) from None

        item = _first_item(obj)
        price = item.get("price") or {}

        # Newer API versions report the billing period per item
        period_end = obj.get("current_period_end") or item.get("current_period_end")

        return cls(
            stripe_subscription_id=subscription_id,
            stripe_customer_id=customer_id,
            status=status,
            version=version,
            product_id=expandable_id(price.get("product")),
            price_id=price.get("id"),
            quantity=int(item.get("quantity") or 1),
            current_period_end=from_timestamp(period_end),
            trial_end=from_timestamp(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            last_event_id=event_id,
        )

    def with_status(
        self,
        status: SubscriptionStatus,
        version: int,
        event_id: str = "",
        current_period_end: datetime | None = None,
    ) -> "SubscriptionRecord":
        """Copy with a new status and version, and optionally a new period end."""
        return replace(
            self,
            status=status,
            version=version,
            last_event_id=event_id,
            current_period_end=current_period_end or self.current_period_end,
        )


@dataclass(frozen=True)
class Mutation:
    """State change produced by an event handler."""

    customer: CustomerLink | None = None
    subscription: SubscriptionRecord | None = None

    @property
    def is_empty(self) -> bool:
        return self.customer is None and self.subscription is None


class SyncOutcome(str, Enum):
    """How a webhook event was acknowledged."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SyncResult:
    """Result of processing one webhook event."""

    event_id: str
    event_type: str
    outcome: SyncOutcome
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    """Subset of a Stripe Checkout Session the application needs."""

    id: str
    url: str | None
    mode: str
    status: str | None = None
    payment_status: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, session: Any) -> "CheckoutSession":
        return cls(
            id=session["id"],
            url=session.get("url"),
            mode=session.get("mode") or "",
            status=session.get("status"),
            payment_status=session.get("payment_status"),
            customer_id=expandable_id(session.get("customer")),
            subscription_id=expandable_id(session.get("subscription")),
            metadata=dict(session.get("metadata") or {}),
        )


def expandable_id(value: Any) -> Optional[str]:
    """Return the id of a Stripe field that may be a string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}
