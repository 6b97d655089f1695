"""Metadata outbox — Clerk role writes still owed after a failed attempt.

The users table is written before Clerk. When the Clerk call fails the
store change is kept and the owed write lands here; drain_outbox() replays
it later. One pending row per user: a newer record bumps the row's version.

Draining claims rows with a short lease (FOR UPDATE SKIP LOCKED), so two
drainers never replay the same row at once. A replayed row is removed only
if its version is unchanged; a record made mid-replay survives the drain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from multishop.errors import DownstreamWriteFailure, MetadataWriteFailed
from multishop.users.models import Role

logger = logging.getLogger(__name__)

_CREATE_OUTBOX_TABLE = """
    CREATE TABLE IF NOT EXISTS metadata_outbox (
        id             SERIAL PRIMARY KEY,
        user_id        TEXT NOT NULL UNIQUE,
        role           TEXT NOT NULL,
        version        INT NOT NULL DEFAULT 1,
        attempts       INT NOT NULL DEFAULT 0,
        last_error     TEXT,
        claimed_until  TIMESTAMPTZ,
        created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""

_CLAIM = """
    UPDATE metadata_outbox
       SET claimed_until = now() + make_interval(secs => %s)
     WHERE id IN (
           SELECT id FROM metadata_outbox
            WHERE claimed_until IS NULL OR claimed_until < now()
            ORDER BY created_at, id
            LIMIT %s
              FOR UPDATE SKIP LOCKED)
 RETURNING id, user_id, role, version, attempts, last_error, created_at
"""

# Drain batch size
DRAIN_BATCH = 50
# Seconds a claimed row stays invisible to other drainers
CLAIM_LEASE_SECONDS = 300


@dataclass
class OutboxEntry:
    id: int
    user_id: str
    role: Role
    version: int = 1
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None

    @staticmethod
    def from_row(row: dict[str, Any]) -> OutboxEntry:
        return OutboxEntry(
            id=row["id"],
            user_id=row["user_id"],
            role=Role(row["role"]),
            version=row.get("version", 1),
            attempts=row["attempts"],
            last_error=row.get("last_error"),
            created_at=row.get("created_at"),
        )


class OutboxStore:
    """Postgres-backed metadata_outbox table."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            self._database_url, autocommit=True, row_factory=dict_row
        )

    async def init_tables(self) -> None:
        async with await self._connect() as conn:
            await conn.execute(_CREATE_OUTBOX_TABLE)
        logger.info("Metadata outbox table initialized")

    async def record(self, user_id: str, role: Role, error: str) -> None:
        """Record (or refresh) the pending role write for a user."""
        try:
            async with await self._connect() as conn:
                await conn.execute(
                    """INSERT INTO metadata_outbox (user_id, role, attempts, last_error)
                       VALUES (%s, %s, 1, %s)
                       ON CONFLICT (user_id) DO UPDATE
                          SET role = EXCLUDED.role,
                              version = metadata_outbox.version + 1,
                              attempts = metadata_outbox.attempts + 1,
                              last_error = EXCLUDED.last_error""",
                    (user_id, role.value, error),
                )
        except psycopg.Error as e:
            logger.exception("Outbox record failed for %s", user_id)
            raise DownstreamWriteFailure() from e

    async def claim(
        self, limit: int = DRAIN_BATCH, lease_seconds: int = CLAIM_LEASE_SECONDS
    ) -> list[OutboxEntry]:
        """Lease up to `limit` unclaimed rows, oldest first."""
        async with await self._connect() as conn:
            cur = await conn.execute(_CLAIM, (lease_seconds, limit))
            rows = await cur.fetchall()
        return sorted((OutboxEntry.from_row(r) for r in rows), key=lambda e: e.id)

    async def mark_failed(self, entry: OutboxEntry, error: str) -> None:
        async with await self._connect() as conn:
            await conn.execute(
                """UPDATE metadata_outbox
                      SET attempts = attempts + 1, last_error = %s, claimed_until = NULL
                    WHERE id = %s""",
                (error, entry.id),
            )

    async def remove(self, entry: OutboxEntry) -> bool:
        """Delete a replayed row unless it was re-recorded meanwhile.

        Returns False (and releases the lease) when a newer version is pending.
        """
        async with await self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM metadata_outbox WHERE id = %s AND version = %s",
                (entry.id, entry.version),
            )
            if cur.rowcount > 0:
                return True
            await conn.execute(
                "UPDATE metadata_outbox SET claimed_until = NULL WHERE id = %s", (entry.id,)
            )
        return False

    async def discard_user(self, user_id: str) -> None:
        """Drop any owed write for a user (deleted, or already in sync)."""
        try:
            async with await self._connect() as conn:
                await conn.execute("DELETE FROM metadata_outbox WHERE user_id = %s", (user_id,))
        except psycopg.Error as e:
            logger.exception("Outbox discard failed for %s", user_id)
            raise DownstreamWriteFailure() from e


async def drain_outbox(outbox, writer, store, limit: int = DRAIN_BATCH) -> tuple[int, int]:
    """Replay pending metadata writes, oldest first.

    The role sent is the one stored locally at replay time, not the one
    recorded with the entry. Entries for users no longer stored are dropped.

    Args:
        outbox: OutboxStore (or anything with claim/remove/mark_failed)
        writer: ClerkClient (anything with update_role)
        store: UserStore (anything with get)
        limit: Max entries per drain

    Returns:
        (succeeded, failed) counts
    """
    entries = await outbox.claim(limit)
    succeeded = failed = 0
    for entry in entries:
        user = await store.get(entry.user_id)
        if user is None:
            logger.info("Outbox entry for absent user %s dropped", entry.user_id)
            await outbox.remove(entry)
            continue
        try:
            await writer.update_role(user.id, user.role)
        except MetadataWriteFailed as e:
            failed += 1
            logger.warning(
                "Outbox replay failed for %s (attempt %d): %s",
                entry.user_id,
                entry.attempts + 1,
                e.reason,
            )
            await outbox.mark_failed(entry, e.reason)
            continue
        succeeded += 1
        if not await outbox.remove(entry):
            logger.info("Outbox entry for %s re-recorded during replay, kept", entry.user_id)
    if entries:
        logger.info("Outbox drained: %d succeeded, %d failed", succeeded, failed)
    return succeeded, failed
