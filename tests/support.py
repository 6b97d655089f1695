"""Test doubles and payload builders.

In-memory stand-ins replace Postgres, Redis and Clerk so the full request
flow runs without external services.
"""

from __future__ import annotations

import base64
import time
from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from typing import Any

from multishop.errors import MetadataWriteFailed
from multishop.users.models import DEFAULT_ROLE, Role, User, UserChanges
from multishop.users.outbox import OutboxEntry
from multishop.webhooks.verification import sign

SIGNING_SECRET = "whsec_" + base64.b64encode(b"multishop-test-signing-key").decode()


class FakeUserStore:
    """Dict-backed users table with the same upsert/delete semantics as UserStore."""

    def __init__(self):
        self.rows: dict[str, User] = {}
        self.writes = 0

    async def init_tables(self) -> None:
        pass

    async def ping(self) -> None:
        pass

    async def get(self, user_id: str) -> User | None:
        return self.rows.get(user_id)

    async def upsert(self, changes: UserChanges) -> User:
        self.writes += 1
        now = datetime.now(timezone.utc)
        existing = self.rows.get(changes.id)
        if existing is not None:
            stale = [u.id for u in self.rows.values() if u.email == changes.email and u.id != changes.id]
            for user_id in stale:
                del self.rows[user_id]
        else:
            existing = next((u for u in self.rows.values() if u.email == changes.email), None)
        if existing is None:
            user = User(
                id=changes.id,
                name=changes.name,
                email=changes.email,
                picture=changes.picture,
                role=changes.role or DEFAULT_ROLE,
                created_at=now,
                updated_at=now,
            )
        else:
            del self.rows[existing.id]
            user = User(
                id=changes.id,
                name=changes.name,
                email=changes.email,
                picture=changes.picture,
                role=changes.role or existing.role,
                created_at=existing.created_at,
                updated_at=now,
            )
        self.rows[user.id] = user
        return user

    async def delete(self, user_id: str) -> bool:
        self.writes += 1
        return self.rows.pop(user_id, None) is not None


class FakeOutbox:
    """Dict-backed outbox with versioned rows and drain claims."""

    def __init__(self):
        self.entries: dict[str, OutboxEntry] = {}
        self.claimed: set[int] = set()
        self._ids = count(1)

    async def init_tables(self) -> None:
        pass

    async def record(self, user_id: str, role: Role, error: str) -> None:
        prior = self.entries.get(user_id)
        self.entries[user_id] = OutboxEntry(
            id=prior.id if prior else next(self._ids),
            user_id=user_id,
            role=role,
            version=prior.version + 1 if prior else 1,
            attempts=(prior.attempts if prior else 0) + 1,
            last_error=error,
        )

    async def claim(self, limit: int = 50) -> list[OutboxEntry]:
        free = [e for e in self.entries.values() if e.id not in self.claimed]
        batch = [replace(e) for e in sorted(free, key=lambda e: e.id)[:limit]]
        self.claimed.update(e.id for e in batch)
        return batch

    async def mark_failed(self, entry: OutboxEntry, error: str) -> None:
        self.claimed.discard(entry.id)
        for current in self.entries.values():
            if current.id == entry.id:
                current.attempts += 1
                current.last_error = error

    async def remove(self, entry: OutboxEntry) -> bool:
        self.claimed.discard(entry.id)
        current = self.entries.get(entry.user_id)
        if current is None or current.id != entry.id or current.version != entry.version:
            return False
        del self.entries[entry.user_id]
        return True

    async def discard_user(self, user_id: str) -> None:
        self.entries.pop(user_id, None)


class FakeClerk:
    def __init__(self):
        self.calls: list[tuple[str, Role]] = []
        self.fail = False

    async def update_role(self, user_id: str, role: Role) -> None:
        self.calls.append((user_id, role))
        if self.fail:
            raise MetadataWriteFailed(user_id, "HTTP 503")


class FakeDeliveryLog:
    def __init__(self):
        self.seen: set[str] = set()

    async def is_duplicate(self, msg_id: str) -> bool:
        return msg_id in self.seen

    async def mark_seen(self, msg_id: str) -> None:
        self.seen.add(msg_id)

    async def aclose(self) -> None:
        pass


def clerk_user_payload(
    event_type: str = "user.created",
    user_id: str = "user_2abc",
    email: str = "ada@example.com",
    first_name: str | None = "Ada",
    last_name: str | None = "Lovelace",
    role: str | None = None,
) -> dict[str, Any]:
    """A Clerk user event body shaped like the real deliveries."""
    data: dict[str, Any] = {
        "id": user_id,
        "object": "user",
        "first_name": first_name,
        "last_name": last_name,
        "image_url": f"https://img.clerk.com/{user_id}.png",
        "primary_email_address_id": "idn_1",
        "email_addresses": [{"id": "idn_1", "email_address": email}],
        "public_metadata": {},
        "private_metadata": {},
    }
    if role is not None:
        data["private_metadata"]["role"] = role
    return {"type": event_type, "object": "event", "data": data}


def signed_headers(body: bytes, msg_id: str = "msg_1", timestamp: int | None = None) -> dict[str, str]:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "svix-id": msg_id,
        "svix-timestamp": ts,
        "svix-signature": f"v1,{sign(SIGNING_SECRET, msg_id, ts, body)}",
        "Content-Type": "application/json",
    }


