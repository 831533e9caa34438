"""Billing state persistence: abstract store and PostgreSQL implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from shopkeeper.billing.errors import CustomerConflict, StorageConflict
from shopkeeper.billing.records import CustomerLink, SubscriptionRecord
from shopkeeper.db.models import STATUS_RANK, SubscriptionStatus, Table

logger = logging.getLogger(__name__)

# Errors that a redelivery of the same event can be expected to get past
TRANSIENT_ERRORS = (
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
    asyncpg.LockNotAvailableError,
    asyncpg.UniqueViolationError,
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)


class UnitOfWork(ABC):
    """Reads and writes performed inside one per-event transaction."""

    @abstractmethod
    async def claim_event(self, event_id: str, event_type: str) -> bool:
        """
        Record the idempotency marker for an event.

        Returns:
            True if the marker was newly recorded, False if already present
        """
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        pass

    @abstractmethod
    async def upsert_subscription(self, record: SubscriptionRecord) -> None:
        pass

    @abstractmethod
    async def link_customer(self, link: CustomerLink) -> None:
        """Link an owner to a Stripe customer; an existing link is never replaced."""
        pass


class BillingStore(ABC):
    """Abstract billing state store."""

    @abstractmethod
    def unit_of_work(self, key: str):
        """
        Open a transaction holding an exclusive lock on ``key``.

        Used as ``async with store.unit_of_work(key) as uow``. Everything
        written through ``uow`` commits together or not at all.

        Raises:
            StorageConflict: On transient storage failures
        """
        pass

    @abstractmethod
    async def get_customer(self, owner_ref: str) -> Optional[str]:
        """Return the Stripe customer id linked to an owner, if any."""
        pass

    @abstractmethod
    async def link_customer(self, link: CustomerLink) -> str:
        """
        Link an owner to a Stripe customer unless already linked.

        Returns:
            The Stripe customer id linked to the owner after the call

        Raises:
            CustomerConflict: If the customer is linked to a different owner
        """
        pass

    @abstractmethod
    async def list_subscriptions(self, owner_ref: str) -> list[SubscriptionRecord]:
        """Return all locally known subscriptions of an owner."""
        pass


def _row_to_record(row: asyncpg.Record) -> SubscriptionRecord:
    return SubscriptionRecord(
        stripe_subscription_id=row["stripe_subscription_id"],
        stripe_customer_id=row["stripe_customer_id"],
        status=SubscriptionStatus(row["status"]),
        version=row["version"],
        product_id=row["product_id"],
        price_id=row["price_id"],
        quantity=row["quantity"],
        current_period_end=row["current_period_end"],
        trial_end=row["trial_end"],
        cancel_at_period_end=row["cancel_at_period_end"],
        last_event_id=row["last_event_id"],
    )


LINK_CUSTOMER_SQL = f"""
    INSERT INTO {Table.CUSTOMERS} (owner_ref, stripe_customer_id)
    VALUES ($1, $2)
    ON CONFLICT DO NOTHING
"""

LINKED_CUSTOMER_SQL = f"""
    SELECT stripe_customer_id
    FROM {Table.CUSTOMERS}
    WHERE owner_ref = $1
"""


class PostgresUnitOfWork(UnitOfWork):
    """UnitOfWork bound to one connection with an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def claim_event(self, event_id: str, event_type: str) -> bool:
        # Blocks on a concurrent uncommitted insert of the same id
        claimed = await self._conn.fetchval(
            f"""
            INSERT INTO {Table.PROCESSED_EVENTS} (event_id, event_type)
            VALUES ($1, $2)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
            """,
            event_id,
            event_type,
        )
        return claimed is not None

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        row = await self._conn.fetchrow(
            f"""
            SELECT *
            FROM {Table.SUBSCRIPTIONS}
            WHERE stripe_subscription_id = $1
            FOR UPDATE
            """,
            subscription_id,
        )
        return _row_to_record(row) if row else None

    async def upsert_subscription(self, record: SubscriptionRecord) -> None:
        # The ordering guard keeps the write monotonic even without the lock
        await self._conn.execute(
            f"""
            INSERT INTO {Table.SUBSCRIPTIONS}
                (stripe_subscription_id, stripe_customer_id, product_id, price_id,
                 quantity, status, current_period_end, trial_end,
                 cancel_at_period_end, version, status_rank, last_event_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (stripe_subscription_id) DO UPDATE SET
                stripe_customer_id = EXCLUDED.stripe_customer_id,
                product_id = EXCLUDED.product_id,
                price_id = EXCLUDED.price_id,
                quantity = EXCLUDED.quantity,
                status = EXCLUDED.status,
                current_period_end = EXCLUDED.current_period_end,
                trial_end = EXCLUDED.trial_end,
                cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                version = EXCLUDED.version,
                status_rank = EXCLUDED.status_rank,
                last_event_id = EXCLUDED.last_event_id,
                updated_at = now()
            WHERE ({Table.SUBSCRIPTIONS}.version,
                   {Table.SUBSCRIPTIONS}.status_rank,
                   {Table.SUBSCRIPTIONS}.last_event_id)
               <= (EXCLUDED.version, EXCLUDED.status_rank, EXCLUDED.last_event_id)
            """,
            record.stripe_subscription_id,
            record.stripe_customer_id,
            record.product_id,
            record.price_id,
            record.quantity,
            record.status.value,
            record.current_period_end,
            record.trial_end,
            record.cancel_at_period_end,
            record.version,
            STATUS_RANK[record.status],
            record.last_event_id,
        )

    async def link_customer(self, link: CustomerLink) -> None:
        status = await self._conn.execute(
            LINK_CUSTOMER_SQL, link.owner_ref, link.stripe_customer_id
        )
        if status == "INSERT 0 1":
            return

        linked = await self._conn.fetchval(LINKED_CUSTOMER_SQL, link.owner_ref)
        if linked is None:
            logger.warning(
                f"Customer {link.stripe_customer_id} is linked to another owner; "
                f"link to {link.owner_ref} dropped"
            )
        elif linked != link.stripe_customer_id:
            logger.warning(
                f"Owner {link.owner_ref} is already linked to {linked}; "
                f"link to {link.stripe_customer_id} dropped"
            )


class PostgresBillingStore(BillingStore):
    """BillingStore backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def unit_of_work(self, key: str) -> AsyncIterator[PostgresUnitOfWork]:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    # Per-entity lock, released at commit or rollback
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", key
                    )
                    yield PostgresUnitOfWork(conn)
        except TRANSIENT_ERRORS as e:
            raise StorageConflict(f"Transient storage failure for {key}: {e}") from e

    async def get_customer(self, owner_ref: str) -> Optional[str]:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(LINKED_CUSTOMER_SQL, owner_ref)

    async def link_customer(self, link: CustomerLink) -> str:
        async with self._pool.acquire() as conn:
            await conn.execute(
                LINK_CUSTOMER_SQL, link.owner_ref, link.stripe_customer_id
            )
            linked = await conn.fetchval(LINKED_CUSTOMER_SQL, link.owner_ref)

        if linked is None:
            raise CustomerConflict(
                f"Customer {link.stripe_customer_id} is linked to another owner"
            )
        return linked

    async def list_subscriptions(self, owner_ref: str) -> list[SubscriptionRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT s.*
                FROM {Table.SUBSCRIPTIONS} s
                JOIN {Table.CUSTOMERS} c
                    ON c.stripe_customer_id = s.stripe_customer_id
                WHERE c.owner_ref = $1
                ORDER BY s.updated_at DESC
                """,
                owner_ref,
            )
        return [_row_to_record(row) for row in rows]
