"""Pytest configuration and shared fixtures."""

import asyncio
import json
import socket
from typing import List
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from opentsdb_nozzle.clients.firehose import Subscription
from opentsdb_nozzle.clients.uaa import UAATokenFetcher
from opentsdb_nozzle.config.settings import NozzleSettings
from opentsdb_nozzle.events import Envelope, EventKind
from opentsdb_nozzle.models import Metric, flatten


class FakePoster:
    """Records every posted batch, flattened to wire-level metrics."""

    def __init__(self):
        self.batches: "asyncio.Queue[List[Metric]]" = asyncio.Queue()
        self.fail_with = None
        # Real posters suspend on I/O; set to let other tasks run mid-post
        self.yield_on_post = False

    async def post(self, batch):
        self.batches.put_nowait(flatten(batch))
        if self.yield_on_post:
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with


class FakeFirehoseClient:
    """Hands out in-memory subscriptions and records the tokens used."""

    def __init__(self):
        self.tokens: List[str] = []
        self.subscriptions: List[Subscription] = []
        self.open_errors: List[Exception] = []

    async def open(self, token: str) -> Subscription:
        self.tokens.append(token)
        if self.open_errors:
            raise self.open_errors.pop(0)

        subscription = Subscription()
        self.subscriptions.append(subscription)
        return subscription

    @property
    def current(self) -> Subscription:
        return self.subscriptions[-1]


class FakeOpenTSDB:
    """aiohttp server standing in for the OpenTSDB /api/put endpoint."""

    def __init__(self, status: int = 200):
        self.status = status
        self.requests: asyncio.Queue = asyncio.Queue()
        self.server = None

    async def start(self):
        app = web.Application()
        app.router.add_post("/api/put", self._handle_put)
        self.server = TestServer(app)
        await self.server.start_server()

    @property
    def url(self) -> str:
        return str(self.server.make_url("/api"))

    async def _handle_put(self, request: web.Request) -> web.Response:
        # aiohttp inflates gzip request bodies itself
        metrics = json.loads(await request.read())
        self.requests.put_nowait({
            "query": dict(request.query),
            "headers": dict(request.headers),
            "metrics": metrics,
        })
        if self.status >= 300:
            return web.Response(status=self.status, text="write failed")
        return web.json_response({"success": len(metrics), "failed": 0, "errors": []}, status=self.status)

    async def close(self):
        if self.server is not None:
            await self.server.close()


class FakeUAA:
    """aiohttp server answering the OAuth2 password grant."""

    def __init__(self, status: int = 200, access_token: str = "good-token"):
        self.status = status
        self.access_token = access_token
        self.requests: List[dict] = []
        self.server = None

    async def start(self):
        app = web.Application()
        app.router.add_post("/oauth/token", self._handle_token)
        self.server = TestServer(app)
        await self.server.start_server()

    @property
    def url(self) -> str:
        return str(self.server.make_url("/"))

    async def _handle_token(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.requests.append({
            "form": dict(form),
            "authorization": request.headers.get("Authorization"),
        })
        if self.status != 200:
            return web.json_response({"error": "unauthorized"}, status=self.status)
        return web.json_response({"token_type": "bearer", "access_token": self.access_token})

    async def close(self):
        if self.server is not None:
            await self.server.close()


class FakeTelnetServer:
    """TCP listener collecting the lines written by the telnet poster."""

    def __init__(self):
        self.lines: asyncio.Queue = asyncio.Queue()
        self.server = None
        self.port = None

    async def start(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        while True:
            line = await reader.readline()
            if not line:
                break
            self.lines.put_nowait(line.decode("utf-8"))
        writer.close()

    async def close(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def test_settings() -> NozzleSettings:
    """Create test configuration."""
    return NozzleSettings(
        uaa_url="http://uaa.test",
        username="admin",
        password="admin",
        traffic_controller_url="ws://doppler.test:8081",
        opentsdb_url="http://opentsdb.test:4242/api",
        flush_duration_seconds=10,
        firehose_reconnect_delay_seconds=0,
        metric_prefix="opentsdb.nozzle.",
        deployment="nozzle-deployment",
        job="opentsdb-firehose-nozzle",
        index="0",
    )


@pytest.fixture
def fake_poster() -> FakePoster:
    return FakePoster()


@pytest.fixture
def fake_firehose() -> FakeFirehoseClient:
    return FakeFirehoseClient()


@pytest.fixture
def mock_token_fetcher():
    """Mock UAA token fetcher handing out numbered tokens."""
    fetcher = Mock(spec=UAATokenFetcher)
    tokens = (f"bearer token-{n}" for n in range(1, 1000))
    fetcher.fetch_auth_token = AsyncMock(side_effect=lambda: next(tokens))
    return fetcher


@pytest.fixture
def fake_opentsdb() -> FakeOpenTSDB:
    return FakeOpenTSDB()


@pytest.fixture
def fake_uaa() -> FakeUAA:
    return FakeUAA()


@pytest.fixture
def fake_telnet_server() -> FakeTelnetServer:
    return FakeTelnetServer()


@pytest.fixture
def free_port() -> int:
    return unused_port()


@pytest.fixture
def value_metric_envelope() -> Envelope:
    """Sample gauge event."""
    return Envelope(
        kind=EventKind.VALUE_METRIC,
        origin="origin",
        name="metricName",
        value=5,
        timestamp=1_000_000_000,
        deployment="deployment-name",
        job="doppler",
        index="0",
        ip="10.0.0.1",
    )


@pytest.fixture
def counter_event_envelope() -> Envelope:
    """Sample counter event."""
    return Envelope(
        kind=EventKind.COUNTER_EVENT,
        origin="origin",
        name="counterName",
        delta=6,
        total=15,
        timestamp=2_000_000_000,
        deployment="deployment-name",
        job="gorouter",
        index="1",
        ip="10.0.0.2",
    )


@pytest.fixture
def log_message_envelope() -> Envelope:
    return Envelope(kind=EventKind.OTHER, origin="origin", timestamp=3_000_000_000)


@pytest.fixture
def dropped_messages_envelope() -> Envelope:
    """Doppler's own report that it dropped messages for this subscription."""
    return Envelope(
        kind=EventKind.COUNTER_EVENT,
        origin="doppler",
        name="TruncatingBuffer.DroppedMessages",
        delta=10,
        total=100,
        timestamp=4_000_000_000,
        deployment="deployment-name",
        job="doppler",
        index="0",
        ip="10.0.0.3",
    )


@pytest.fixture
def make_opentsdb():
    """Factory for OpenTSDB stand-ins answering with a given status."""
    return FakeOpenTSDB
