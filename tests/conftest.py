"""
tests/conftest.py -- Shared test fixtures for NetPulse tests.

This module provides:
  - FakeSessionPool: a SessionPool stand-in that answers from a dict, so poller
    tests never open a UDP socket
  - make_device(): a Device with sensible defaults for store and poller tests
  - _make_test_stores(): isolated in-memory DBs for devices and tickets
  - _patch_lifespan(): wires test stores, hub and poller into app.state
  - api_client: TestClient plus one JWT per role

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the HTTP tests because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests that stay on one thread use sqlite:///:memory:.

The environment must be prepared before any core/auth/api import:
get_settings() is cached on first use.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Optional

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("API_RATE_LIMIT", "1000/minute")
os.environ.setdefault("MONITORING_AUTOSTART", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.tokens import create_access_token
from core.errors import DeviceUnreachable
from core.incidents import IncidentTicketer
from core.poller import Poller
from core.reconciler import StateReconciler
from inventory.models import Device
from inventory.store import DeviceStore
from realtime.hub import NotificationHub
from tickets.store import TicketStore

# ---------------------------------------------------------------------------
# Fakes and factories
# ---------------------------------------------------------------------------


class FakeSessionPool:
    """Answers query() from a per-device map.

    responses[device_id] may be a value list or an exception instance to
    raise. Devices without an entry are unreachable. An optional gate
    (asyncio.Event) holds every query until it is set.
    """

    def __init__(self, responses: Optional[dict] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.responses = responses if responses is not None else {}
        self.gate = gate
        self.queried: list[int] = []
        self.discarded: list[int] = []
        self.closed = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def __len__(self) -> int:
        return len(set(self.queried)) if not self.closed else 0

    async def query(self, device: Device) -> list:
        self.queried.append(device.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            answer = self.responses.get(device.id, DeviceUnreachable(device.id, "timeout"))
            if isinstance(answer, BaseException):
                raise answer
            return list(answer)
        finally:
            self.in_flight -= 1

    async def discard(self, device_id: int) -> bool:
        self.discarded.append(device_id)
        return True

    async def close_all(self) -> int:
        self.closed += 1
        return 0


def make_device(name: str = "core-rtr-01", ip_address: str = "10.0.0.1", **overrides) -> Device:
    fields = {
        "name": name,
        "ip_address": ip_address,
        "device_type": "router",
        "location": "DC1",
        "department": "Network",
    }
    fields.update(overrides)
    return Device(**fields)


def build_poller(
    devices: DeviceStore,
    tickets: TicketStore,
    hub: NotificationHub,
    pool,
    **kwargs,
) -> Poller:
    incidents = IncidentTicketer(tickets, hub, dedup_seconds=kwargs.pop("dedup_seconds", 0))
    reconciler = StateReconciler(devices, hub, incidents)
    return Poller(devices, pool, reconciler, **kwargs)


@pytest.fixture
def device_store() -> Generator[DeviceStore, None, None]:
    store = DeviceStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def ticket_store() -> Generator[TicketStore, None, None]:
    store = TicketStore("sqlite:///:memory:")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[DeviceStore, TicketStore]:
    """Create isolated named shared-memory SQLite stores for one test module."""
    devices_url = f"sqlite:///file:test_devices_{db_suffix}?mode=memory&cache=shared&uri=true"
    tickets_url = f"sqlite:///file:test_tickets_{db_suffix}?mode=memory&cache=shared&uri=true"
    return DeviceStore(db_url=devices_url), TicketStore(db_url=tickets_url)


def _patch_lifespan(devices: DeviceStore, tickets: TicketStore, pool: FakeSessionPool):
    """Return an async context manager that replaces the real lifespan.

    The poller is built on the fake pool and is not started; tests drive it
    through the monitoring routes.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.devices = devices
        app.state.tickets = tickets
        app.state.hub = NotificationHub(queue_size=100)
        app.state.poller = build_poller(devices, tickets, app.state.hub, pool, interval=3600)
        yield
        await app.state.poller.stop()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, dict[str, str], FakeSessionPool], None, None]:
    """Yield (client, tokens, pool) for API integration tests.

    tokens maps each role to a bearer token: admin (user 1), agent (user 2),
    user (user 3). Each test module gets its own databases.
    """
    devices, tickets = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    pool = FakeSessionPool()
    tokens = {
        "admin": create_access_token(user_id=1, username="admin", role="admin", expire_seconds=3600),
        "agent": create_access_token(user_id=2, username="agent", role="agent", expire_seconds=3600),
        "user": create_access_token(user_id=3, username="viewer", role="user", expire_seconds=3600),
    }

    app.router.lifespan_context = _patch_lifespan(devices, tickets, pool)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, tokens, pool

    devices.close()
    tickets.close()


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
