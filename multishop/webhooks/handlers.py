"""Webhook HTTP handler — FastAPI route for Clerk identity webhooks.

The handler:
1. Reads raw body (needed for HMAC verification)
2. Checks the three Svix headers are present
3. Verifies the Svix signature
4. Parses and schema-validates the event
5. Skips deliveries already processed
6. Applies the event (store, then Clerk metadata)
7. Marks the delivery processed and returns 200

Contract:
- Errors end in a fixed plain-text body (no exception details)
- 200 "Webhook received" for every processed, ignored or duplicate delivery
- 400 for missing headers, bad signature, malformed payload
- 500 when the local store cannot be written (Svix redelivers)
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from slowapi import Limiter

from multishop.errors import WebhookError
from multishop.webhooks.events import event_type_name, parse_event
from multishop.webhooks.verification import extract_headers

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks"
SUCCESS_TEXT = "Webhook received"

# Webhook receive counter for monitoring (per outcome status)
_webhook_counts: dict[str, int] = {}


def _log_webhook(event_type: str, msg_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[status] = _webhook_counts.get(status, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT provider=clerk event=%s id=%s status=%s count=%d",
        event_type,
        msg_id,
        status,
        _webhook_counts[status],
    )


async def handle_clerk_webhook(request: Request) -> PlainTextResponse:
    """Verify, parse and apply one Clerk webhook delivery."""
    start = time.time()
    state = request.app.state

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    try:
        svix = extract_headers(headers)
    except WebhookError:
        _log_webhook("unknown", "unknown", "missing_headers")
        raise

    try:
        state.verifier.verify(body, svix)
    except WebhookError:
        _log_webhook("unknown", svix.msg_id, "signature_failed")
        raise

    try:
        event = parse_event(body)
    except WebhookError:
        _log_webhook("unknown", svix.msg_id, "malformed")
        raise
    event_type = event_type_name(event)

    if await state.delivery_log.is_duplicate(svix.msg_id):
        _log_webhook(event_type, svix.msg_id, "duplicate")
        return PlainTextResponse(SUCCESS_TEXT, status_code=200)

    try:
        result = await state.synchronizer.apply(event)
    except WebhookError:
        _log_webhook(event_type, svix.msg_id, "failed")
        raise

    await state.delivery_log.mark_seen(svix.msg_id)
    _log_webhook(event_type, svix.msg_id, result.action)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed_ms, event_type)

    return PlainTextResponse(SUCCESS_TEXT, status_code=200)


def register_webhook_routes(app: FastAPI, limiter: Limiter, rate_limit: str) -> None:
    """Register the webhook route and its error handler on the app."""

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError):
        return PlainTextResponse(exc.response_text, status_code=exc.status_code)

    @app.post(WEBHOOK_PATH)
    @limiter.limit(rate_limit)
    async def clerk_webhook(request: Request):
        """Receive Clerk webhooks (Svix-signed)."""
        return await handle_clerk_webhook(request)

    logger.info("Webhook route registered: %s", WEBHOOK_PATH)
