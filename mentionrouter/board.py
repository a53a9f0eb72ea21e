"""
Meeting board — HTTP client, broadcast normalization, channel watcher.

The board owns channels and messages. The router only reads: it lists
channels, fetches recent history for context, and subscribes to every
channel's push stream over one WebSocket.

Depends on: config, models
"""

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from mentionrouter.config import (
    BOARD_API_URL,
    BOARD_HTTP_TIMEOUT,
    BOARD_RECONNECT_DELAY,
    CHANNEL_REFRESH_INTERVAL,
    MEETING_BOARD_WS_URL,
    TRANSPORT_OPEN_TIMEOUT,
)
from mentionrouter.models import BoardMessage, BroadcastEvent, Channel


# =============================================================================
# HTTP client
# =============================================================================

class BoardClient:
    """Read-only access to the board's REST API. Failures yield empty lists."""

    def __init__(self, api_url: str = BOARD_API_URL, *,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = BOARD_HTTP_TIMEOUT):
        self.api_url = api_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def _get_json(self, path: str, params: Optional[dict] = None):
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.get(self.api_url + path, params=params)
            resp.raise_for_status()
            return resp.json()

    async def list_channels(self) -> list[Channel]:
        try:
            data = await self._get_json("/channels")
        except (httpx.HTTPError, ValueError) as e:
            print(f"[MentionRouter] Failed to fetch channels: {e}", file=sys.stderr)
            return []
        if isinstance(data, dict):
            data = data.get("channels", [])
        channels = []
        for ch in data if isinstance(data, list) else []:
            if not isinstance(ch, dict):
                continue
            channel_id = ch.get("id") or ch.get("_id")
            if not channel_id:
                continue
            channels.append(Channel(id=str(channel_id), name=ch.get("name") or str(channel_id)))
        return channels

    async def fetch_messages(self, channel_name: str, limit: int) -> list[BoardMessage]:
        """Most-recent-first history of a channel, as the board returns it."""
        try:
            data = await self._get_json("/messages", params={"channel": channel_name, "limit": limit})
        except (httpx.HTTPError, ValueError) as e:
            print(f"[MentionRouter] Failed to fetch messages for #{channel_name}: {e}", file=sys.stderr)
            return []
        if isinstance(data, dict):
            data = data.get("messages", [])
        messages = []
        for m in data if isinstance(data, list) else []:
            if not isinstance(m, dict):
                continue
            messages.append(BoardMessage(
                author=m.get("author_name") or m.get("authorName") or m.get("author")
                or m.get("authorId") or "unknown",
                content=m.get("content") or "",
                timestamp=m.get("created_at") or m.get("timestamp") or "",
                author_role=m.get("author_role") or m.get("authorRole"),
            ))
        return messages


# =============================================================================
# Broadcast normalization
# =============================================================================

def normalize_broadcast(data: Any) -> Optional[BroadcastEvent]:
    """Turn a raw board push payload into a BroadcastEvent. None if unusable."""
    if not isinstance(data, dict):
        return None
    channel_id = data.get("channelId") or data.get("channel_id") or ""
    content = data.get("content") or ""
    if not channel_id or not isinstance(content, str):
        return None
    mentions = data.get("mentions")
    if not isinstance(mentions, list):
        mentions = []
    return BroadcastEvent(
        author_id=str(data.get("authorId") or data.get("author") or ""),
        content=content,
        channel_id=str(channel_id),
        mentions=[str(m) for m in mentions if m],
        author_name=data.get("author_name") or data.get("authorName"),
    )


# =============================================================================
# Channel watcher
# =============================================================================

async def open_board_socket(url: str):
    return await websockets.connect(
        url,
        open_timeout=TRANSPORT_OPEN_TIMEOUT,
        ping_interval=30,
        ping_timeout=10,
        close_timeout=10,
    )


class ChannelWatcher:
    """Subscribes to every board channel and hands broadcasts to a callback.

    channel_names is the shared id -> name map; the watcher populates it
    from every channel list fetch.
    """

    def __init__(self, board: BoardClient, on_broadcast: Callable[[BroadcastEvent], None], *,
                 channel_names: Optional[dict[str, str]] = None,
                 ws_url: str = MEETING_BOARD_WS_URL,
                 open_socket: Callable[[str], Awaitable[Any]] = open_board_socket,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 refresh_interval: float = CHANNEL_REFRESH_INTERVAL,
                 reconnect_delay: float = BOARD_RECONNECT_DELAY):
        self.board = board
        self.channel_names = channel_names if channel_names is not None else {}
        self.subscribed: set[str] = set()
        self.connections = 0
        self._on_broadcast = on_broadcast
        self._ws_url = ws_url
        self._open_socket = open_socket
        self._sleep = sleep
        self._refresh_interval = refresh_interval
        self._reconnect_delay = reconnect_delay
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True

    async def run(self) -> None:
        """Connect, subscribe, and read broadcasts forever; reconnect on loss."""
        while not self._stopped:
            print(f"[MentionRouter] Connecting to Meeting Board at {self._ws_url}", file=sys.stderr)
            try:
                ws = await self._open_socket(self._ws_url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                print(f"[MentionRouter] Meeting Board unreachable: {e!r}", file=sys.stderr)
            else:
                try:
                    await self._serve(ws)
                except Exception as e:
                    print(f"[MentionRouter] Meeting Board watcher error: {e!r}", file=sys.stderr)
            if self._stopped:
                break
            print(f"[MentionRouter] Meeting Board connection closed, reconnecting in "
                  f"{self._reconnect_delay:g}s", file=sys.stderr)
            await self._sleep(self._reconnect_delay)

    async def _serve(self, ws) -> None:
        self.subscribed = set()
        self.connections += 1
        print("[MentionRouter] Connected to Meeting Board", file=sys.stderr)
        refresh = None
        try:
            await self.refresh(ws)
            refresh = asyncio.create_task(self._refresh_loop(ws))
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as e:
            print(f"[MentionRouter] Meeting Board WebSocket error: {e}", file=sys.stderr)
        except OSError as e:
            print(f"[MentionRouter] Meeting Board transport error: {e!r}", file=sys.stderr)
        finally:
            if refresh is not None:
                refresh.cancel()
            try:
                await ws.close()
            except (ConnectionClosed, OSError):
                pass

    async def refresh(self, ws) -> None:
        """Fetch the channel list and subscribe to anything not yet subscribed.

        Channels known from earlier connections are resubscribed even if the
        fetch fails.
        """
        for channel in await self.board.list_channels():
            self.channel_names[channel.id] = channel.name
        new = [cid for cid in self.channel_names if cid not in self.subscribed]
        for channel_id in new:
            await ws.send(json.dumps({"action": "subscribe", "channel": channel_id}))
            self.subscribed.add(channel_id)
        print(f"[MentionRouter] Subscribed to {len(self.subscribed)} channel(s)", file=sys.stderr)

    async def _refresh_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                await self.refresh(ws)
            except (ConnectionClosed, OSError):
                return
            except Exception as e:
                print(f"[MentionRouter] Channel refresh error: {e!r}", file=sys.stderr)

    def _handle_frame(self, raw) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return
        event = normalize_broadcast(data)
        if event is not None:
            self._on_broadcast(event)
