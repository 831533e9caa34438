"""Billing state synchronizer: applies Stripe webhook events to local state.

Each event is verified, deduplicated by event id, and applied in a single
transaction locked on the subscription it concerns. Events older than the
stored subscription version are acknowledged without regressing state, so
local state converges regardless of delivery order or duplication.
"""

import logging
from typing import Any, Optional

from shopkeeper.billing.errors import (
    InvalidSignature,
    MalformedPayload,
    StaleEvent,
    StorageConflict,
    UnknownEventType,
)
from shopkeeper.billing.events import DEFAULT_TOLERANCE_SECONDS, BillingEvent, verify_event
from shopkeeper.billing.gateway import StripeGateway
from shopkeeper.billing.handlers import (
    get_handler,
    lock_key_for,
    needs_subscription_fetch,
    subscription_id_for,
)
from shopkeeper.billing.records import SubscriptionRecord, SyncOutcome, SyncResult
from shopkeeper.billing.store import BillingStore
from shopkeeper.config import AppConfig

logger = logging.getLogger(__name__)


def check_version(
    current: Optional[SubscriptionRecord],
    event: BillingEvent,
    record: Optional[SubscriptionRecord] = None,
) -> None:
    """
    Reject an event older than the stored subscription state.

    Versions are whole seconds, so events created in the same second are
    ordered by status lifecycle rank and then by event id. A record never
    replaces one with a higher ordering key, whatever the delivery order.

    Raises:
        StaleEvent: If the event does not supersede the stored state
    """
    if current is None:
        return
    stale = event.version < current.version
    if record is not None and record.ordering_key < current.ordering_key:
        stale = True
    if stale:
        raise StaleEvent(current.stripe_subscription_id, event.version, current.version)


class BillingSynchronizer:
    """Reconciles Stripe webhook events into the billing store."""

    def __init__(
        self,
        store: BillingStore,
        gateway: StripeGateway,
        webhook_secret: str,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        if not webhook_secret:
            raise ValueError("stripe_webhook_secret not configured")
        self._store = store
        self._gateway = gateway
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: BillingStore,
        gateway: StripeGateway,
    ) -> "BillingSynchronizer":
        return cls(
            store=store,
            gateway=gateway,
            webhook_secret=config.stripe_webhook_secret.get_secret_value(),
            tolerance=config.webhook_tolerance_seconds,
        )

    async def process(self, payload: bytes, sig_header: str) -> SyncResult:
        """
        Verify and apply one signed webhook delivery.

        Args:
            payload: Raw request body
            sig_header: Stripe-Signature header value

        Returns:
            SyncResult describing how the event was acknowledged

        Raises:
            InvalidSignature: Signature mismatch or expired timestamp
            MalformedPayload: Body is not a well-formed event
            StorageConflict: Transient storage failure; redeliver
        """
        try:
            event = verify_event(payload, sig_header, self._webhook_secret, self._tolerance)
        except InvalidSignature as e:
            logger.error(f"Rejected webhook with invalid signature: {e}")
            raise
        except MalformedPayload as e:
            logger.error(f"Rejected malformed webhook payload: {e}")
            raise

        return await self.apply(event)

    async def apply(self, event: BillingEvent) -> SyncResult:
        """
        Apply a verified event to local state.

        Raises:
            MalformedPayload: Event object cannot be mapped onto a record
            StorageConflict: Transient storage failure; redeliver
        """
        try:
            handler = get_handler(event.type)
        except UnknownEventType:
            logger.info(f"Unhandled event type: {event.type} ({event.id})")
            return self._result(event, SyncOutcome.IGNORED)

        subscription_id = subscription_id_for(event)
        key = lock_key_for(event)

        # Outbound calls stay outside the critical section
        prefetched: Optional[dict[str, Any]] = None
        if needs_subscription_fetch(event):
            prefetched = self._gateway.retrieve_subscription(subscription_id)

        try:
            async with self._store.unit_of_work(key) as uow:
                if not await uow.claim_event(event.id, event.type):
                    logger.info(f"Duplicate delivery of {event.id} ignored")
                    return self._result(event, SyncOutcome.DUPLICATE)

                current = None
                if subscription_id:
                    current = await uow.get_subscription(subscription_id)

                try:
                    mutation = handler(current, event, prefetched)
                except MalformedPayload as e:
                    logger.error(f"Malformed {event.type} event {event.id}: {e}")
                    raise

                # The customer link is not versioned and is always applied
                if mutation.customer is not None:
                    await uow.link_customer(mutation.customer)

                try:
                    check_version(current, event, mutation.subscription)
                except StaleEvent as e:
                    logger.info(f"Discarded {event.type} {event.id}: {e}")
                    return self._result(event, SyncOutcome.STALE)

                if mutation.subscription is not None:
                    await uow.upsert_subscription(mutation.subscription)
        except StorageConflict as e:
            logger.warning(f"Storage conflict applying {event.id}; awaiting redelivery: {e}")
            raise

        logger.info(f"Applied {event.type} {event.id} (key={key})")
        return self._result(event, SyncOutcome.APPLIED)

    @staticmethod
    def _result(event: BillingEvent, outcome: SyncOutcome) -> SyncResult:
        return SyncResult(
            event_id=event.id,
            event_type=event.type,
            outcome=outcome,
            metadata=dict(event.metadata),
        )
