"""
Shared fixtures — in-memory agent gateways, board transport, recording sleep.

Nothing here opens a real socket: gateways are FakeGateway objects whose
open() is injected as the connection's transport opener, and the board and
judgment service are served by httpx.MockTransport.
"""

import asyncio
import json
from typing import Optional

import httpx
import pytest

from mentionrouter.board import BoardClient
from mentionrouter.context import ChannelContextCache
from mentionrouter.debounce import WakeDebouncer
from mentionrouter.gateway.connection import AgentConnection
from mentionrouter.identity import generate_identity
from mentionrouter.models import AgentEndpoint, RouterContext
from mentionrouter.state import DeviceTokenStore


# ---------------------------------------------------------------------------
# Fake agent gateway
# ---------------------------------------------------------------------------

class FakeGatewaySocket:
    """One open transport to a FakeGateway. Async-iterates inbound frames."""

    def __init__(self, gateway: "FakeGateway", challenge: Optional[str]):
        self.gateway = gateway
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        if challenge is not None:
            self.push({"type": "event", "event": "connect.challenge", "payload": {"nonce": challenge}})

    def push(self, frame: dict) -> None:
        self._inbox.put_nowait(json.dumps(frame))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def send(self, raw: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        frame = json.loads(raw)
        self.sent.append(frame)
        reply = self.gateway.reply(frame)
        if reply is not None:
            self.push({"type": "res", "id": frame["id"], **reply})

    async def ping(self):
        if self.gateway.ping_error is not None:
            raise self.gateway.ping_error
        pong = asyncio.get_running_loop().create_future()
        if self.gateway.answer_pings:
            pong.set_result(None)
        return pong

    async def close(self) -> None:
        self.drop()

    def drop(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)


class FakeGateway:
    """Scripted agent gateway.

    connect_errors are returned, in order, to the first connect requests;
    later connects succeed. Every accepted wake text lands in `wakes`.
    """

    def __init__(self, connect_errors=(), *, challenge: Optional[str] = "nonce-1",
                 device_token: Optional[str] = None, fail_opens: int = 0):
        self.connect_errors = list(connect_errors)
        self.challenge = challenge
        self.device_token = device_token
        self.fail_opens = fail_opens
        self.gate: Optional[asyncio.Event] = None
        self.answer_pings = True
        self.ping_error: Optional[Exception] = None
        self.sockets: list[FakeGatewaySocket] = []
        self.connects: list[dict] = []
        self.wakes: list[str] = []

    async def open(self, url: str) -> FakeGatewaySocket:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_opens:
            self.fail_opens -= 1
            raise OSError(f"connection refused: {url}")
        ws = FakeGatewaySocket(self, self.challenge)
        self.sockets.append(ws)
        return ws

    def reply(self, frame: dict) -> Optional[dict]:
        method = frame.get("method")
        if method == "connect":
            self.connects.append(frame["params"])
            if self.connect_errors:
                return {"ok": False, "error": self.connect_errors.pop(0)}
            payload = {"auth": {"deviceToken": self.device_token}} if self.device_token else {}
            return {"ok": True, "payload": payload}
        if method == "wake":
            self.wakes.append(frame["params"]["text"])
            return {"ok": True, "payload": {}}
        return {"ok": False, "error": {"code": "UNKNOWN_METHOD", "message": method}}


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0.001)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingManager:
    """Stands in for ConnectionManager where only the wake requests matter."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.wakes: list[tuple[str, str]] = []

    def wake(self, agent_id: str, text: str) -> bool:
        self.wakes.append((agent_id, text))
        return self.accept

    @property
    def woken(self) -> list[str]:
        return [agent_id for agent_id, _ in self.wakes]


# ---------------------------------------------------------------------------
# Board
# ---------------------------------------------------------------------------

BOARD_API = "http://board.test/api"

CHANNELS = [{"id": "c1", "name": "general"}, {"_id": "c2", "name": "dev-talk"}]

MESSAGES = [
    {"author_name": "qa-bot", "author_role": "qa", "content": "login test fails on staging",
     "created_at": "2025-03-01T10:05:00Z"},
    {"author_name": "po-bot", "author_role": "po", "content": "kicking off the sprint",
     "created_at": "2025-03-01T10:00:00Z"},
]


def board_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/channels":
        return httpx.Response(200, json=CHANNELS)
    if request.url.path == "/api/messages":
        return httpx.Response(200, json=MESSAGES)
    return httpx.Response(404, json={"error": "not found"})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def identity():
    return generate_identity()


@pytest.fixture
def roster():
    return {
        agent_id: AgentEndpoint(
            id=agent_id,
            display_name=f"{agent_id}-bot",
            role=agent_id,
            transport_address=f"ws://{agent_id}.test:18789",
            shared_secret=f"{agent_id}-secret",
        )
        for agent_id in ["po", "dev", "cq", "qa", "ops"]
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def board():
    return BoardClient(BOARD_API, transport=httpx.MockTransport(board_handler))


@pytest.fixture
def ctx(identity, roster, clock, board):
    return RouterContext(
        identity=identity,
        roster=roster,
        tokens=DeviceTokenStore(None),
        debouncer=WakeDebouncer(30.0, clock=clock),
        context_cache=ChannelContextCache(board, clock=clock),
        channel_names={"c1": "general", "c2": "dev-talk"},
    )


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_connection(identity, roster, recording_sleep):
    """Build an AgentConnection for roster agent "dev" talking to a FakeGateway."""

    def factory(gateway: FakeGateway, tokens: Optional[DeviceTokenStore] = None, **overrides):
        options = dict(
            open_transport=gateway.open,
            sleep=recording_sleep,
            grace_delay=0.05,
            connect_timeout=1.0,
            wake_timeout=1.0,
        )
        options.update(overrides)
        if tokens is None:
            tokens = DeviceTokenStore(None)
        return AgentConnection(roster["dev"], identity, tokens, **options)

    return factory


@pytest.fixture
def eventually():
    async def wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return wait


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def recording_manager():
    return RecordingManager()
