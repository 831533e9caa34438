"""Application entry point."""

import asyncio
import logging
import signal
import sys
from typing import Optional

from shopkeeper.billing.gateway import StripeGateway
from shopkeeper.billing.store import PostgresBillingStore
from shopkeeper.billing.synchronizer import BillingSynchronizer
from shopkeeper.config import AppConfig
from shopkeeper.db.pool import close_pool, create_pool
from shopkeeper.db.schema.migrate import migrate
from shopkeeper.server import run_server

logger = logging.getLogger(__name__)


async def boot(config: AppConfig, shutdown_event: Optional[asyncio.Event] = None) -> None:
    """
    Boot sequence: pool → migrations → webhook server → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        gateway = StripeGateway.from_config(config)
        pool = await create_pool(config)
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e

    logger.info(
        f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
    )

    try:
        applied = await migrate(pool)
        logger.info(f"Migrations applied: {applied}")

        synchronizer = BillingSynchronizer.from_config(
            config, PostgresBillingStore(pool), gateway
        )
        await run_server(config, synchronizer, shutdown_event)
    finally:
        await close_pool(pool)
        logger.info("Application shutdown complete")


def main() -> None:
    """Run the webhook service until SIGTERM/SIGINT."""
    config = AppConfig()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Configuration loaded: env={config.env}")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(boot(config, shutdown_event))
    except SystemExit:
        raise
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
