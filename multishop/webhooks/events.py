"""Clerk webhook event parsing — verified body -> typed event.

Every field is schema-validated before use. A signature-valid body that does
not match the schema raises MalformedPayload; nothing downstream indexes
into raw payload dicts.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field, ValidationError

from multishop.errors import MalformedPayload
from multishop.users.models import Role, UserChanges

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Clerk event types this service acts on."""
    USER_CREATED = "user.created"
    ROLE_UPDATED = "role.updated"
    USER_DELETED = "user.deleted"


# ── Payload schemas ───────────────────────────────────────────────────────


class EmailAddress(BaseModel):
    id: str = ""
    email_address: str = Field(min_length=3)


class UserData(BaseModel):
    """The `data` object of user.created / role.updated."""

    id: str = Field(min_length=1)
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    email_addresses: list[EmailAddress] = Field(min_length=1)
    primary_email_address_id: str | None = None
    public_metadata: dict[str, Any] = Field(default_factory=dict)
    private_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @property
    def primary_email(self) -> str:
        """Email whose id matches primary_email_address_id, else the first."""
        for addr in self.email_addresses:
            if self.primary_email_address_id and addr.id == self.primary_email_address_id:
                return addr.email_address
        return self.email_addresses[0].email_address

    @property
    def full_name(self) -> str:
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts)

    @property
    def role(self) -> Role | None:
        """Role carried by the event, private metadata first."""
        raw = self.private_metadata.get("role") or self.public_metadata.get("role")
        if raw is None:
            return None
        try:
            return Role(str(raw).upper())
        except ValueError:
            raise MalformedPayload()

    def to_changes(self) -> UserChanges:
        return UserChanges(
            id=self.id,
            name=self.full_name,
            email=self.primary_email,
            picture=self.image_url or "",
            role=self.role,
        )


class DeletedObject(BaseModel):
    """The `data` object of user.deleted."""

    id: str = Field(min_length=1)
    deleted: bool = True

    model_config = {"extra": "ignore"}


class _Envelope(BaseModel):
    type: str = Field(min_length=1)
    data: dict[str, Any]

    model_config = {"extra": "ignore"}


# ── Tagged events ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UserCreated:
    data: UserData
    type: EventType = EventType.USER_CREATED


@dataclass(frozen=True)
class RoleUpdated:
    data: UserData
    type: EventType = EventType.ROLE_UPDATED


@dataclass(frozen=True)
class UserDeleted:
    data: DeletedObject
    type: EventType = EventType.USER_DELETED


@dataclass(frozen=True)
class UnhandledEvent:
    """Any event type this service ignores. Acknowledged with 200."""
    type: str


WebhookEvent = Union[UserCreated, RoleUpdated, UserDeleted, UnhandledEvent]


def event_type_name(event: WebhookEvent) -> str:
    t = event.type
    return t.value if isinstance(t, EventType) else t


def parse_event(body: bytes) -> WebhookEvent:
    """Parse a verified webhook body into a typed event.

    Raises:
        MalformedPayload: body is not JSON or does not match the event schema
    """
    try:
        raw = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON")
        raise MalformedPayload()

    try:
        envelope = _Envelope.model_validate(raw)
    except ValidationError as e:
        logger.warning("Webhook envelope invalid: %s", e.errors(include_url=False))
        raise MalformedPayload()

    try:
        event_type = EventType(envelope.type)
    except ValueError:
        return UnhandledEvent(type=envelope.type)

    try:
        if event_type is EventType.USER_DELETED:
            return UserDeleted(data=DeletedObject.model_validate(envelope.data))
        data = UserData.model_validate(envelope.data)
    except ValidationError as e:
        logger.warning("Webhook %s data invalid: %s", event_type.value, e.errors(include_url=False))
        raise MalformedPayload()

    # Resolve the role now so a bad role fails parsing, not the store write
    _ = data.role
    if event_type is EventType.USER_CREATED:
        return UserCreated(data=data)
    return RoleUpdated(data=data)
