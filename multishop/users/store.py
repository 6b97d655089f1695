"""User store: Postgres CRUD on the users table (psycopg 3, async).

Each call opens its own autocommit connection. Upserts run inside a
transaction so the id match and the email match see the same snapshot.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg.rows import dict_row

from multishop.errors import DownstreamWriteFailure
from multishop.users.models import DEFAULT_ROLE, Role, User, UserChanges

logger = logging.getLogger(__name__)

_CREATE_USERS_TABLE = """
    CREATE TABLE IF NOT EXISTS users (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL DEFAULT '',
        email       TEXT NOT NULL UNIQUE,
        picture     TEXT NOT NULL DEFAULT '',
        role        TEXT NOT NULL DEFAULT 'USER'
                    CHECK (role IN ('USER', 'SELLER', 'ADMIN')),
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""

# An email belongs to one Clerk account at a time: when the subject's own row
# exists, any other row still holding the event's email is stale and removed
_RELEASE_EMAIL = """
    DELETE FROM users
     WHERE email = %s AND id <> %s
       AND EXISTS (SELECT 1 FROM users WHERE id = %s)
 RETURNING id
"""

_UPDATE_BY_ID = """
    UPDATE users
       SET name = %s, email = %s, picture = %s,
           role = COALESCE(%s::text, role), updated_at = now()
     WHERE id = %s
 RETURNING id, name, email, picture, role, created_at, updated_at
"""

# The email match also takes over the row id, so later deletes by subject id find it
_UPSERT_BY_EMAIL = """
    INSERT INTO users (id, name, email, picture, role)
    VALUES (%s, %s, %s, %s, COALESCE(%s::text, %s))
    ON CONFLICT (email) DO UPDATE
       SET id = EXCLUDED.id, name = EXCLUDED.name, picture = EXCLUDED.picture,
           role = COALESCE(%s::text, users.role), updated_at = now()
 RETURNING id, name, email, picture, role, created_at, updated_at
"""


class UserStore:
    """Postgres-backed users table."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            self._database_url, autocommit=True, row_factory=dict_row
        )

    async def init_tables(self) -> None:
        """Create the users table if it doesn't exist.  Idempotent."""
        async with await self._connect() as conn:
            await conn.execute(_CREATE_USERS_TABLE)
        logger.info("Users table initialized")

    async def ping(self) -> None:
        async with await self._connect() as conn:
            await conn.execute("SELECT 1")

    async def get(self, user_id: str) -> User | None:
        async with await self._connect() as conn:
            cur = await conn.execute(
                "SELECT id, name, email, picture, role, created_at, updated_at "
                "FROM users WHERE id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        return User.from_row(row) if row else None

    async def upsert(self, changes: UserChanges) -> User:
        """Overwrite the row matching subject id, else email; insert if neither.

        The stored role is kept when changes.role is None; new rows default to USER.
        If the subject's row exists and another row holds the event's email,
        that other row is deleted in the same transaction.
        """
        role = changes.role.value if isinstance(changes.role, Role) else None
        try:
            async with await self._connect() as conn:
                async with conn.transaction():
                    cur = await conn.execute(
                        _RELEASE_EMAIL, (changes.email, changes.id, changes.id)
                    )
                    for released in await cur.fetchall():
                        logger.warning(
                            "Email %s now belongs to %s; stale row %s removed",
                            changes.email,
                            changes.id,
                            released["id"],
                        )
                    cur = await conn.execute(
                        _UPDATE_BY_ID,
                        (changes.name, changes.email, changes.picture, role, changes.id),
                    )
                    row = await cur.fetchone()
                    if row is None:
                        cur = await conn.execute(
                            _UPSERT_BY_EMAIL,
                            (
                                changes.id,
                                changes.name,
                                changes.email,
                                changes.picture,
                                role,
                                DEFAULT_ROLE.value,
                                role,
                            ),
                        )
                        row = await cur.fetchone()
        except psycopg.Error as e:
            logger.exception("User upsert failed for %s", changes.id)
            raise DownstreamWriteFailure() from e
        return User.from_row(row)

    async def delete(self, user_id: str) -> bool:
        """Delete by subject id. Returns False if no row existed."""
        try:
            async with await self._connect() as conn:
                cur = await conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
                deleted = cur.rowcount > 0
        except psycopg.Error as e:
            logger.exception("User delete failed for %s", user_id)
            raise DownstreamWriteFailure() from e
        return deleted
