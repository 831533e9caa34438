"""Lightweight HTTP server for the Stripe webhook endpoint."""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from shopkeeper.billing.errors import InvalidSignature, MalformedPayload, StorageConflict
from shopkeeper.billing.synchronizer import BillingSynchronizer
from shopkeeper.config import AppConfig

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/stripe"


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/stripe.

    Returns 200 for every acknowledged event (applied, duplicate, stale or
    ignored), 400 for deliveries that must never be retried and 500 when
    Stripe should redeliver.
    """
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.Response(status=400, text="Missing signature")

    payload = await request.read()
    synchronizer: BillingSynchronizer = request.app["synchronizer"]

    try:
        result = await synchronizer.process(payload, sig_header)
    except InvalidSignature:
        return web.Response(status=400, text="Invalid signature")
    except MalformedPayload:
        return web.Response(status=400, text="Invalid payload")
    except StorageConflict:
        return web.Response(status=500, text="Storage conflict")
    except Exception as e:
        logger.exception(f"Error processing webhook: {e}")
        # Return 500 so Stripe will retry
        return web.Response(status=500, text="Internal error")

    return web.json_response(
        {"status": result.outcome.value, "event_id": result.event_id}
    )


async def health_endpoint(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(synchronizer: BillingSynchronizer) -> web.Application:
    """Create aiohttp application with the webhook and health routes."""
    app = web.Application()
    app["synchronizer"] = synchronizer
    app.router.add_post(WEBHOOK_PATH, webhook_endpoint)
    app.router.add_get("/health", health_endpoint)
    return app


async def run_server(
    config: AppConfig,
    synchronizer: BillingSynchronizer,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Run webhook server until shutdown_event is set (or forever)."""
    app = create_app(synchronizer)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.webhook_server_host, config.webhook_server_port)
    await site.start()

    logger.info(
        f"Webhook server listening on "
        f"{config.webhook_server_host}:{config.webhook_server_port}"
    )

    try:
        if shutdown_event:
            await shutdown_event.wait()
        else:
            await asyncio.Event().wait()
    finally:
        logger.info("Shutting down webhook server...")
        await runner.cleanup()
