"""Clerk Backend API client — pushes the resolved role into private metadata.

Only the metadata endpoint is used:

    PATCH {api_url}/users/{user_id}/metadata
    {"private_metadata": {"role": "<ROLE>"}}

Clerk deep-merges metadata objects, so other private keys are left alone.
"""

from __future__ import annotations

import logging

import httpx

from multishop.clerk.retry import retry_with_backoff
from multishop.errors import MetadataWriteFailed
from multishop.users.models import Role

logger = logging.getLogger(__name__)


class ClerkClient:
    """Thin async wrapper around the Clerk users metadata endpoint."""

    def __init__(
        self,
        secret_key: str,
        api_url: str = "https://api.clerk.com/v1",
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_retries = max_retries
        self._http = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    @retry_with_backoff(max_retries=lambda self: self.max_retries)
    async def _patch_metadata(self, user_id: str, payload: dict) -> None:
        response = await self._http.patch(f"/users/{user_id}/metadata", json=payload)
        response.raise_for_status()

    async def update_role(self, user_id: str, role: Role) -> None:
        """Set private_metadata.role for a Clerk user.

        Raises:
            MetadataWriteFailed: non-retryable error, or retries exhausted
        """
        try:
            await self._patch_metadata(user_id, {"private_metadata": {"role": role.value}})
        except httpx.HTTPStatusError as e:
            raise MetadataWriteFailed(user_id, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise MetadataWriteFailed(user_id, type(e).__name__) from e
        logger.info("Clerk metadata updated: user=%s role=%s", user_id, role.value)


# Module-level singleton
_client: ClerkClient | None = None


def get_clerk_client(settings) -> ClerkClient:
    """Get or create the process-wide ClerkClient."""
    global _client
    if _client is None:
        if not settings.clerk_secret_key:
            logger.warning("CLERK_SECRET_KEY not set — metadata writes will fail")
        _client = ClerkClient(
            secret_key=settings.clerk_secret_key,
            api_url=settings.clerk_api_url,
            timeout=settings.clerk_timeout,
            max_retries=settings.clerk_max_retries,
        )
    return _client


async def close_clerk_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
