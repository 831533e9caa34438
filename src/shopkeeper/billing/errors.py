"""Billing error taxonomy.

Only ``StorageConflict`` is transient; the webhook transport redelivers the
event. Every other error is terminal for the event it was raised for.
"""


class BillingError(Exception):
    """Base billing exception."""


class InvalidSignature(BillingError):
    """Webhook signature mismatch or timestamp outside the tolerance window."""


class MalformedPayload(BillingError):
    """Webhook body is not a well-formed Stripe event."""


class UnknownEventType(BillingError):
    """No handler is registered for the event type."""

    def __init__(self, event_type: str):
        super().__init__(f"No handler for event type {event_type!r}")
        self.event_type = event_type


class StaleEvent(BillingError):
    """Event version is older than the stored state."""

    def __init__(self, key: str, incoming: int, stored: int):
        super().__init__(
            f"Stale event for {key}: version {incoming} "
            f"does not supersede stored {stored}"
        )
        self.key = key
        self.incoming = incoming
        self.stored = stored


class StorageConflict(BillingError):
    """Transient storage failure; safe to redeliver."""


class CustomerNotFound(BillingError):
    """Owner has no linked Stripe customer."""


class CustomerConflict(BillingError):
    """Stripe customer is already linked to a different owner; not retryable."""
