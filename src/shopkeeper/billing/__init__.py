"""Stripe billing: webhook synchronization, checkout and subscription queries."""

from shopkeeper.billing.errors import (
    BillingError,
    CustomerConflict,
    CustomerNotFound,
    InvalidSignature,
    MalformedPayload,
    StaleEvent,
    StorageConflict,
    UnknownEventType,
)
from shopkeeper.billing.gateway import StripeGateway
from shopkeeper.billing.records import (
    CheckoutSession,
    SubscriptionRecord,
    SyncOutcome,
    SyncResult,
)
from shopkeeper.billing.service import BillingService
from shopkeeper.billing.store import BillingStore, PostgresBillingStore
from shopkeeper.billing.synchronizer import BillingSynchronizer

__all__ = [
    "BillingError",
    "BillingService",
    "BillingStore",
    "BillingSynchronizer",
    "CheckoutSession",
    "CustomerConflict",
    "CustomerNotFound",
    "InvalidSignature",
    "MalformedPayload",
    "PostgresBillingStore",
    "StaleEvent",
    "StorageConflict",
    "StripeGateway",
    "SubscriptionRecord",
    "SyncOutcome",
    "SyncResult",
    "UnknownEventType",
]
