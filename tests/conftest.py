"""Test fixtures — a fresh SQLite database and service graph per test.

Learn: Testing pattern for the dispatch core:

1. Each test gets its own file-backed SQLite database (aiosqlite), with
   the schema created straight from the ORM models. A file (not
   :memory:) lets concurrent accept attempts open separate connections,
   which is exactly what the race tests need.
2. The messaging transport is a FakeTransport that records every send
   and can be told to fail, stall or report corrupt sessions.
3. Settings shrink every delay to zero so fan-out and retries run fast.
   Timer tests set their own short windows on the supervisor.
4. The HTTP client talks to an app built around the same Services graph,
   so API tests and service tests observe the same state.
"""

import asyncio
from collections import defaultdict
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from taxi_dispatch.config import Settings
from taxi_dispatch.container import build_services
from taxi_dispatch.db.engine import build_engine, build_session_factory
from taxi_dispatch.db.models import Base
from taxi_dispatch.notifications.transport import MessagingTransport

TEST_API_KEY = "test-key"


class FakeTransport(MessagingTransport):
    """In-memory transport that records traffic.

    `fail(identity, *errors)` queues exceptions raised by the next sends
    to that identity; `stall(identity, seconds)` delays every send to it.
    """

    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.presence: list[tuple[str, str]] = []
        self.repaired: list[str] = []
        self.connected = True
        self.reconnects = 0
        self.reconnect_error: Exception | None = None
        self.reconnect_restores = True
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._fail_always: dict[str, Exception] = {}
        self._stalls: dict[str, float] = {}

    @property
    def name(self) -> str:
        return "fake"

    def fail(self, identity: str, *errors: Exception) -> None:
        self._failures[identity].extend(errors)

    def fail_always(self, identity: str, error: Exception) -> None:
        self._fail_always[identity] = error

    def stall(self, identity: str, seconds: float) -> None:
        self._stalls[identity] = seconds

    async def send(self, identity: str, payload: dict[str, Any]) -> None:
        if identity in self._stalls:
            await asyncio.sleep(self._stalls[identity])
        if identity in self._fail_always:
            raise self._fail_always[identity]
        if self._failures.get(identity):
            raise self._failures[identity].pop(0)
        self.sent.append((identity, payload))

    async def presence_update(self, identity: str, state: str) -> None:
        self.presence.append((identity, state))

    async def is_connected(self) -> bool:
        return self.connected

    async def reconnect(self) -> None:
        self.reconnects += 1
        if self.reconnect_error is not None:
            raise self.reconnect_error
        self.connected = self.reconnect_restores

    async def repair_session(self, identity: str) -> None:
        self.repaired.append(identity)

    # ─── Assertions helpers ─────────────────────────────

    def texts_to(self, identity: str) -> list[str]:
        return [p["text"] for who, p in self.sent if who == identity and "text" in p]

    def payloads_to(self, identity: str) -> list[dict[str, Any]]:
        return [p for who, p in self.sent if who == identity]


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        environment="development",
        api_key=TEST_API_KEY,
        google_maps_api_key="",
        batch_delay_seconds=0,
        location_pin_delay_seconds=0,
        presence_delay_seconds=0,
        retry_delay_seconds=0,
        message_timeout_seconds=1.0,
        reconnect_delay_seconds=0,
        request_timeout_seconds=30.0,
        idle_timeout_seconds=300.0,
        run_background_loops=False,
    )


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """Per-test SQLite database with the full schema."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture()
async def services(test_settings, session_factory, transport):
    """The whole dispatch core wired around the fake transport."""
    svc = build_services(
        test_settings, session_factory, transport=transport, publish_events=False
    )
    try:
        yield svc
    finally:
        await svc.aclose()


@pytest_asyncio.fixture()
async def register_driver(services):
    """Factory: register a driver and return it."""
    counter = {"n": 0}

    async def _register(phone: str | None = None, name: str | None = None, **kwargs):
        counter["n"] += 1
        n = counter["n"]
        return await services.drivers.register(
            phone or f"31000000{n:02d}",
            name or f"Driver {n}",
            kwargs.pop("plate", f"ABC{100 + n}"),
            kwargs.pop("location", None),
        )

    return _register


@pytest_asyncio.fixture()
async def client(services):
    """HTTP client for an app built around the test service graph.

    Learn: ASGITransport does not run the lifespan, which is fine: the
    app receives a ready Services graph and never builds its own.
    """
    from taxi_dispatch.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"x-api-key": TEST_API_KEY},
    ) as ac:
        yield ac
