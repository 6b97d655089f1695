"""Shared fixtures for the MulTiShop backend test suite."""

from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from multishop.app import create_app
from multishop.config import Settings
from support import (
    SIGNING_SECRET,
    FakeClerk,
    FakeDeliveryLog,
    FakeOutbox,
    FakeUserStore,
    signed_headers,
)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        signing_secret=SIGNING_SECRET,
        outbox_drain_interval=0,
        webhook_rate_limit="10000/minute",
    )


@pytest.fixture
def store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture
def outbox() -> FakeOutbox:
    return FakeOutbox()


@pytest.fixture
def clerk() -> FakeClerk:
    return FakeClerk()


@pytest.fixture
def delivery_log() -> FakeDeliveryLog:
    return FakeDeliveryLog()


@pytest.fixture
def app(settings, store, outbox, clerk, delivery_log):
    return create_app(
        settings, store=store, outbox=outbox, clerk=clerk, delivery_log=delivery_log
    )


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def post_event(client):
    """POST a correctly signed event body. Returns the response."""

    def _post(payload: dict[str, Any], msg_id: str = "msg_1"):
        body = json.dumps(payload).encode()
        return client.post("/api/webhooks", content=body, headers=signed_headers(body, msg_id))

    return _post
