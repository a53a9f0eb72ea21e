"""
AgentConnection — one persistent, authenticated gateway connection per agent.

Lifecycle (owned by a single task per agent):

    DISCONNECTED -> CONNECTING -> [CHALLENGED] -> AUTHENTICATED -> DISCONNECTED

Pairing and stale-token retries loop inside CONNECTING. Any other handshake
failure, a transport error, or a dropped session schedules a reconnect after
the current backoff delay. Inbound frames are read by a per-transport reader
task that resolves pending requests and queues connect.challenge nonces.

Depends on: config, models, state, gateway/protocol
"""

import asyncio
import sys
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from mentionrouter.config import (
    CONNECT_GRACE_DELAY,
    CONNECT_REQUEST_TIMEOUT,
    KEEPALIVE_INTERVAL,
    KEEPALIVE_TIMEOUT,
    PAIRING_MAX_RETRIES,
    PAIRING_RETRY_DELAY,
    RECONNECT_MAX_DELAY,
    RECONNECT_MIN_DELAY,
    TRANSPORT_OPEN_TIMEOUT,
    WAKE_REQUEST_TIMEOUT,
)
from mentionrouter.gateway.protocol import (
    CODE_CONNECTION_CLOSED,
    CODE_SEND_FAILED,
    CODE_TIMEOUT,
    HandshakeError,
    NotPairedError,
    RequestResult,
    StaleTokenError,
    build_connect_params,
    challenge_nonce,
    classify_connect_error,
    decode_frame,
    encode_request,
    issued_device_token,
    new_request_id,
)
from mentionrouter.models import AgentEndpoint, ConnectionStatus, DeviceIdentity
from mentionrouter.state import DeviceTokenStore

OpenTransport = Callable[[str], Awaitable[Any]]

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


async def open_websocket(url: str):
    """Default transport opener. Keepalive is driven by AgentConnection itself."""
    return await websockets.connect(
        url,
        open_timeout=TRANSPORT_OPEN_TIMEOUT,
        ping_interval=None,
        close_timeout=5,
    )


def next_backoff(current: float, maximum: float = RECONNECT_MAX_DELAY) -> float:
    return min(current * 2, maximum)


class _Session:
    """State bound to one open transport."""

    def __init__(self, ws):
        self.ws = ws
        self.pending: dict[str, asyncio.Future] = {}
        self.challenges: asyncio.Queue = asyncio.Queue()
        self.reader: Optional[asyncio.Task] = None
        self.closed = False

    def fail_pending(self) -> None:
        for fut in self.pending.values():
            if not fut.done():
                fut.set_result(RequestResult.failure(CODE_CONNECTION_CLOSED, "connection closed"))
        self.pending.clear()


class AgentConnection:
    """Keeps one authenticated channel to an agent gateway alive indefinitely."""

    def __init__(self, endpoint: AgentEndpoint, identity: DeviceIdentity,
                 tokens: DeviceTokenStore, *,
                 open_transport: OpenTransport = open_websocket,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 grace_delay: float = CONNECT_GRACE_DELAY,
                 pairing_retry_delay: float = PAIRING_RETRY_DELAY,
                 pairing_max_retries: int = PAIRING_MAX_RETRIES,
                 backoff_min: float = RECONNECT_MIN_DELAY,
                 backoff_max: float = RECONNECT_MAX_DELAY,
                 connect_timeout: float = CONNECT_REQUEST_TIMEOUT,
                 wake_timeout: float = WAKE_REQUEST_TIMEOUT,
                 keepalive_interval: float = KEEPALIVE_INTERVAL,
                 keepalive_timeout: float = KEEPALIVE_TIMEOUT):
        self.endpoint = endpoint
        self.status = ConnectionStatus.DISCONNECTED
        self.backoff = backoff_min
        self.sessions = 0
        self.wakes_delivered = 0
        self._identity = identity
        self._tokens = tokens
        self._open_transport = open_transport
        self._sleep = sleep
        self._grace_delay = grace_delay
        self._pairing_retry_delay = pairing_retry_delay
        self._pairing_max_retries = pairing_max_retries
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._connect_timeout = connect_timeout
        self._wake_timeout = wake_timeout
        self._keepalive_interval = keepalive_interval
        self._keepalive_timeout = keepalive_timeout
        self._session: Optional[_Session] = None
        self._queued_wake: Optional[str] = None
        self._wake_queued = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def agent_id(self) -> str:
        return self.endpoint.id

    @property
    def queued_wake(self) -> Optional[str]:
        return self._queued_wake

    def is_authenticated(self) -> bool:
        return self.status is ConnectionStatus.AUTHENTICATED and self._session is not None

    def describe(self) -> dict:
        return {
            "status": self.status.value,
            "backoff": self.backoff,
            "sessions": self.sessions,
            "queued_wake": self._queued_wake is not None,
            "wakes_delivered": self.wakes_delivered,
        }

    # -- Public API --

    def ensure_started(self) -> None:
        """Start the lifecycle task unless it is already running."""
        if self._closed:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"gateway:{self.agent_id}")

    async def wake(self, text: str) -> bool:
        """Deliver a wake now if authenticated, else keep it as the only queued wake.

        Returns True only when the gateway acknowledged the wake. Never raises
        for delivery problems.
        """
        if self.is_authenticated():
            return await self._deliver_wake(self._session, text)
        if self._queued_wake is not None:
            print(f"[MentionRouter]   Replacing queued wake for \"{self.agent_id}\"", file=sys.stderr)
        self._queued_wake = text
        self._wake_queued.set()
        self.ensure_started()
        return False

    async def close(self) -> None:
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        session = self._session
        if session is not None:
            await self._close_transport(session)
        self.status = ConnectionStatus.DISCONNECTED

    # -- Lifecycle --

    async def _run(self) -> None:
        while not self._closed:
            try:
                session = await self._establish()
                if session is not None:
                    await self._serve(session)
            except Exception as e:
                print(f"[MentionRouter]   Connection loop error for \"{self.agent_id}\": {e!r}", file=sys.stderr)
            self.status = ConnectionStatus.DISCONNECTED
            if self._closed:
                break
            delay = self.backoff
            print(f"[MentionRouter]   Reconnecting to \"{self.agent_id}\" in {delay:g}s", file=sys.stderr)
            await self._backoff_sleep(delay)
            self.backoff = next_backoff(self.backoff, self._backoff_max)

    async def _backoff_sleep(self, delay: float) -> None:
        """Wait out the reconnect delay, or less if a wake is queued meanwhile.

        Only wakes queued during this wait cut it short; one queued before
        it started leaves the full delay in place.
        """
        self._wake_queued.clear()
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(self._wake_queued.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        if waiter.done() and not waiter.cancelled():
            print(f"[MentionRouter]   Wake queued for \"{self.agent_id}\", reconnecting now", file=sys.stderr)

    async def _establish(self) -> Optional[_Session]:
        """Open a transport and authenticate. None means: back off and try later."""
        pairing_retries = 0
        while not self._closed:
            self.status = ConnectionStatus.CONNECTING
            try:
                ws = await self._open_transport(self.endpoint.transport_address)
            except TRANSPORT_ERRORS as e:
                print(f"[MentionRouter]   Gateway for \"{self.agent_id}\" unreachable: {e!r}", file=sys.stderr)
                return None

            session = _Session(ws)
            session.reader = asyncio.create_task(self._read_loop(session))
            try:
                await self._handshake(session)
                return session
            except NotPairedError:
                await self._close_transport(session)
                pairing_retries += 1
                if pairing_retries > self._pairing_max_retries:
                    print(f"[MentionRouter]   \"{self.agent_id}\" still not paired after "
                          f"{self._pairing_max_retries} retries, backing off", file=sys.stderr)
                    return None
                print(f"[MentionRouter]   Pairing requested for \"{self.agent_id}\", "
                      f"waiting for auto-approve...", file=sys.stderr)
                await self._sleep(self._pairing_retry_delay)
            except StaleTokenError:
                await self._close_transport(session)
                self._tokens.discard(self.agent_id)
                print(f"[MentionRouter]   Stale device token for \"{self.agent_id}\", "
                      f"retrying with gateway token", file=sys.stderr)
            except HandshakeError as e:
                await self._close_transport(session)
                print(f"[MentionRouter]   Connect error for \"{self.agent_id}\": {e}", file=sys.stderr)
                return None
            except asyncio.CancelledError:
                await self._close_transport(session)
                raise
        return None

    async def _handshake(self, session: _Session) -> None:
        try:
            nonce = await asyncio.wait_for(session.challenges.get(), self._grace_delay)
        except asyncio.TimeoutError:
            nonce = None
        if nonce:
            self.status = ConnectionStatus.CHALLENGED

        holding_device_token = self.agent_id in self._tokens
        credential = self._tokens.credential_for(self.agent_id, self.endpoint.shared_secret)
        params = build_connect_params(self._identity, credential, nonce=nonce or None)
        result = await self._request(session, "connect", params, self._connect_timeout)
        if not result.success:
            raise classify_connect_error(result, holding_device_token)

        device_token = issued_device_token(result.payload)
        if device_token and device_token != self._tokens.get(self.agent_id):
            self._tokens.store(self.agent_id, device_token)

    async def _serve(self, session: _Session) -> None:
        """Run an authenticated session until its transport closes."""
        self._session = session
        self.status = ConnectionStatus.AUTHENTICATED
        self.backoff = self._backoff_min
        self.sessions += 1
        text, self._queued_wake = self._queued_wake, None
        print(f"[MentionRouter]   Connected to \"{self.agent_id}\" gateway", file=sys.stderr)

        keepalive = asyncio.create_task(self._keepalive_loop(session))
        try:
            if text is not None:
                await self._deliver_wake(session, text)
            await session.reader
        finally:
            keepalive.cancel()
            self._session = None
            self.status = ConnectionStatus.DISCONNECTED
            await self._close_transport(session)
        print(f"[MentionRouter]   Gateway connection to \"{self.agent_id}\" closed", file=sys.stderr)

    # -- Transport --

    async def _read_loop(self, session: _Session) -> None:
        try:
            async for raw in session.ws:
                frame = decode_frame(raw)
                if frame is None:
                    continue
                if frame.get("type") == "res":
                    fut = session.pending.pop(frame.get("id"), None)
                    if fut is not None and not fut.done():
                        fut.set_result(RequestResult.from_frame(frame))
                    continue
                nonce = challenge_nonce(frame)
                if nonce is not None:
                    session.challenges.put_nowait(nonce)
        except ConnectionClosed as e:
            print(f"[MentionRouter]   Gateway \"{self.agent_id}\" dropped: {e}", file=sys.stderr)
        except OSError as e:
            print(f"[MentionRouter]   Gateway \"{self.agent_id}\" transport error: {e!r}", file=sys.stderr)
        finally:
            session.closed = True
            session.fail_pending()

    async def _request(self, session: _Session, method: str, params: dict,
                       timeout: float) -> RequestResult:
        if session.closed:
            return RequestResult.failure(CODE_CONNECTION_CLOSED, "connection closed")
        request_id = new_request_id()
        fut = asyncio.get_running_loop().create_future()
        session.pending[request_id] = fut
        try:
            try:
                await session.ws.send(encode_request(request_id, method, params))
            except (ConnectionClosed, OSError) as e:
                return RequestResult.failure(CODE_SEND_FAILED, str(e))
            try:
                return await asyncio.wait_for(fut, timeout)
            except asyncio.TimeoutError:
                return RequestResult.failure(CODE_TIMEOUT, f"no reply to {method} within {timeout:g}s")
        finally:
            session.pending.pop(request_id, None)

    async def _deliver_wake(self, session: _Session, text: str) -> bool:
        result = await self._request(session, "wake", {"mode": "now", "text": text}, self._wake_timeout)
        if result.success:
            self.wakes_delivered += 1
            print(f"[MentionRouter]   Wake acknowledged by \"{self.agent_id}\"", file=sys.stderr)
            return True
        print(f"[MentionRouter]   Wake error for \"{self.agent_id}\": {result.describe()}", file=sys.stderr)
        return False

    async def _keepalive_loop(self, session: _Session) -> None:
        """Ping every keepalive_interval; a missing pong closes the transport."""
        while not session.closed:
            await asyncio.sleep(self._keepalive_interval)
            try:
                pong = await session.ws.ping()
                await asyncio.wait_for(pong, self._keepalive_timeout)
            except asyncio.TimeoutError:
                print(f"[MentionRouter]   No pong from \"{self.agent_id}\", closing", file=sys.stderr)
                await self._close_transport(session)
                return
            except (ConnectionClosed, OSError):
                return
            except Exception as e:
                print(f"[MentionRouter]   Keepalive error for \"{self.agent_id}\": {e!r}", file=sys.stderr)

    async def _close_transport(self, session: _Session) -> None:
        try:
            await session.ws.close()
        except (ConnectionClosed, OSError):
            pass
        if session.reader is not None and not session.reader.done():
            try:
                await asyncio.wait_for(session.reader, 5.0)
            except asyncio.TimeoutError:
                session.reader.cancel()
        session.closed = True
        session.fail_pending()
