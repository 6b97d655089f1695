"""Local user record, mirrored from Clerk."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Storefront roles. Stored as text and pushed to Clerk private metadata."""
    USER = "USER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


DEFAULT_ROLE = Role.USER


@dataclass
class User:
    """A row of the users table.

    id is the Clerk subject id. email is unique.
    """
    id: str
    name: str
    email: str
    picture: str = ""
    role: Role = DEFAULT_ROLE
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["role"] = self.role.value
        return d

    @staticmethod
    def from_row(row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            picture=row.get("picture") or "",
            role=Role(row.get("role") or DEFAULT_ROLE.value),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class UserChanges:
    """Fields an identity event writes onto a user row.

    role is None when the event carries no role; the stored role is then kept
    (or defaulted on insert).
    """
    id: str
    name: str
    email: str
    picture: str = ""
    role: Role | None = None
