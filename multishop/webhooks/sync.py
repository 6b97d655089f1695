"""User synchronizer — applies identity events to the local store and Clerk.

Branches:
- user.created / role.updated -> upsert row, then push stored role to Clerk
- user.deleted                -> delete row by subject id (absent row is a no-op)
- anything else               -> no-op

The store is written first. A failed Clerk write does not undo it; the
owed write goes to the metadata outbox and the delivery still succeeds.
A successful Clerk write clears whatever the outbox still owed that user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from multishop.errors import MetadataWriteFailed
from multishop.users.models import User
from multishop.webhooks.events import (
    RoleUpdated,
    UnhandledEvent,
    UserCreated,
    UserDeleted,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of applying one event."""
    action: str  # upserted, deleted, already_deleted, ignored
    user: User | None = None
    metadata_synced: bool = False


class UserSynchronizer:
    """Applies webhook events to the user store and Clerk metadata."""

    def __init__(self, store, clerk, outbox):
        self._store = store
        self._clerk = clerk
        self._outbox = outbox

    async def apply(self, event: WebhookEvent) -> SyncResult:
        if isinstance(event, (UserCreated, RoleUpdated)):
            return await self._upsert(event)
        if isinstance(event, UserDeleted):
            return await self._delete(event)
        if isinstance(event, UnhandledEvent):
            logger.info("Ignoring webhook event type: %s", event.type)
            return SyncResult(action="ignored")
        raise TypeError(f"unknown event: {event!r}")

    async def _upsert(self, event: UserCreated | RoleUpdated) -> SyncResult:
        user = await self._store.upsert(event.data.to_changes())
        logger.info("User upserted: id=%s role=%s (%s)", user.id, user.role.value, event.type.value)

        try:
            await self._clerk.update_role(user.id, user.role)
        except MetadataWriteFailed as e:
            logger.warning(
                "Clerk metadata write failed for %s, queued in outbox: %s", user.id, e.reason
            )
            await self._outbox.record(user.id, user.role, e.reason)
            return SyncResult(action="upserted", user=user, metadata_synced=False)
        # Clerk now holds the stored role; an older owed write must not replay
        await self._outbox.discard_user(user.id)
        return SyncResult(action="upserted", user=user, metadata_synced=True)

    async def _delete(self, event: UserDeleted) -> SyncResult:
        user_id = event.data.id
        deleted = await self._store.delete(user_id)
        await self._outbox.discard_user(user_id)
        if not deleted:
            logger.info("User %s already absent — delete is a no-op", user_id)
            return SyncResult(action="already_deleted")
        logger.info("User deleted: id=%s", user_id)
        return SyncResult(action="deleted")
