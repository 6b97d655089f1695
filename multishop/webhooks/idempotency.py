"""Webhook idempotency — Redis-based delivery dedupe.

Contract:
- Tracks processed svix-ids in Redis with 24h TTL
- Marked only after successful processing, so failed deliveries are retried
- Seen deliveries are answered 200 (not error — Svix retries on errors)
- Key pattern: webhook:seen:clerk:{svix_id}
- If Redis is down, falls back to allowing (fail-open for availability)
"""

from __future__ import annotations

import logging

import redis.asyncio as redis_lib

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:seen"


class DeliveryLog:
    """Records which webhook deliveries were fully processed."""

    def __init__(self, redis_url: str, provider: str = "clerk"):
        self._redis_url = redis_url
        self._provider = provider
        self._client: redis_lib.Redis | None = None

    def _get_redis(self) -> redis_lib.Redis:
        if self._client is None:
            self._client = redis_lib.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _key(self, msg_id: str) -> str:
        return f"{_KEY_PREFIX}:{self._provider}:{msg_id}"

    async def is_duplicate(self, msg_id: str) -> bool:
        """Check if this delivery has already been processed."""
        if not msg_id:
            return False
        try:
            seen = await self._get_redis().exists(self._key(msg_id))
        except Exception:
            logger.warning(
                "Redis unavailable for webhook dedup — allowing %s/%s",
                self._provider,
                msg_id,
                exc_info=True,
            )
            return False
        if seen:
            logger.info("Duplicate webhook skipped: %s/%s", self._provider, msg_id)
            return True
        return False

    async def mark_seen(self, msg_id: str) -> None:
        """Mark a delivery as processed."""
        if not msg_id:
            return
        try:
            await self._get_redis().set(self._key(msg_id), "1", ex=_DEDUP_TTL_SECONDS)
        except Exception:
            logger.warning("Failed to mark webhook as seen: %s/%s", self._provider, msg_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
