"""Lightweight table-name constants and column-name enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    CUSTOMERS = "billing_customers"
    SUBSCRIPTIONS = "billing_subscriptions"
    PROCESSED_EVENTS = "billing_processed_events"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column name enums
class SubscriptionStatus(str, Enum):
    """Stripe subscription status."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


# Lifecycle position, breaks ties between events created in the same second
STATUS_RANK = {
    SubscriptionStatus.INCOMPLETE: 0,
    SubscriptionStatus.TRIALING: 1,
    SubscriptionStatus.ACTIVE: 2,
    SubscriptionStatus.PAST_DUE: 3,
    SubscriptionStatus.UNPAID: 4,
    SubscriptionStatus.PAUSED: 5,
    SubscriptionStatus.INCOMPLETE_EXPIRED: 6,
    SubscriptionStatus.CANCELED: 7,
}

# Statuses that grant access to the subscribed product
VALID_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class CheckoutMode(str, Enum):
    """Stripe Checkout session mode."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    SETUP = "setup"
