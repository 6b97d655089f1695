"""FastAPI app factory for the MulTiShop backend.

Startup order:
1. load_settings() — fails with ConfigurationMissing if the signing secret is absent
2. Build collaborators (user store, outbox, Clerk client, delivery log)
3. Lifespan: create tables, start the outbox drain task
4. Shutdown: stop the drain task, close HTTP and Redis clients
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from multishop.clerk import close_clerk_client, get_clerk_client
from multishop.config import Settings, configure_logging, load_settings
from multishop.users.outbox import OutboxStore, drain_outbox
from multishop.users.store import UserStore
from multishop.webhooks.handlers import register_webhook_routes
from multishop.webhooks.idempotency import DeliveryLog
from multishop.webhooks.sync import UserSynchronizer
from multishop.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)


async def _outbox_loop(app: FastAPI, interval: float) -> None:
    """Drain the metadata outbox every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await drain_outbox(app.state.outbox, app.state.clerk, app.state.store)
        except Exception:
            logger.exception("Outbox drain failed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    await app.state.store.init_tables()
    await app.state.outbox.init_tables()

    drain_task = None
    if settings.outbox_drain_interval > 0:
        drain_task = asyncio.create_task(_outbox_loop(app, settings.outbox_drain_interval))

    logger.info("MulTiShop backend started")
    try:
        yield
    finally:
        if drain_task is not None:
            drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drain_task
        await app.state.delivery_log.aclose()
        if app.state.owns_clerk:
            await close_clerk_client()
        logger.info("MulTiShop backend stopped")


def create_app(
    settings: Settings | None = None,
    *,
    store=None,
    outbox=None,
    clerk=None,
    delivery_log=None,
) -> FastAPI:
    """Build the app. Collaborators default to the Postgres/Redis/Clerk implementations."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="MulTiShop Backend", lifespan=_lifespan)

    app.state.settings = settings
    app.state.store = store or UserStore(settings.database_url)
    app.state.outbox = outbox or OutboxStore(settings.database_url)
    app.state.owns_clerk = clerk is None
    app.state.clerk = clerk or get_clerk_client(settings)
    app.state.delivery_log = delivery_log or DeliveryLog(settings.redis_url)
    app.state.verifier = SignatureVerifier(
        settings.signing_secret, tolerance_seconds=settings.webhook_tolerance_seconds
    )
    app.state.synchronizer = UserSynchronizer(
        app.state.store, app.state.clerk, app.state.outbox
    )

    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    register_webhook_routes(app, limiter, settings.webhook_rate_limit)

    @app.get("/health")
    async def health():
        try:
            await app.state.store.ping()
        except Exception:
            logger.warning("Health check: database unreachable", exc_info=True)
            return JSONResponse({"status": "unavailable"}, status_code=503)
        return {"status": "ok"}

    return app
