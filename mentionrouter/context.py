"""
Conversation context: short-TTL cache of recent channel history, prompt formatting.

Both dispatch stages want the same window of history for the same broadcast;
the cache keeps that to one board fetch.

Depends on: config, models, board
"""

import time
from datetime import datetime
from typing import Callable

from mentionrouter.board import BoardClient
from mentionrouter.config import CONTEXT_CACHE_TTL, CONTEXT_LINE_MAX, CONTEXT_MESSAGES_LIMIT
from mentionrouter.models import BoardMessage, ContextCacheEntry


# =============================================================================
# Cache
# =============================================================================

class ChannelContextCache:
    """channel name -> recent messages, reused for ttl seconds."""

    def __init__(self, board: BoardClient, *, limit: int = CONTEXT_MESSAGES_LIMIT,
                 ttl: float = CONTEXT_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.board = board
        self.limit = limit
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, ContextCacheEntry] = {}

    async def get(self, channel_name: str) -> list[BoardMessage]:
        """Most-recent-first messages for a channel. Empty fetches are not cached."""
        now = self._clock()
        entry = self._entries.get(channel_name)
        if entry is not None and now - entry.fetched_at < self.ttl:
            return entry.messages

        messages = await self.board.fetch_messages(channel_name, self.limit)
        if messages:
            self._entries[channel_name] = ContextCacheEntry(messages=messages, fetched_at=now)
        else:
            self._entries.pop(channel_name, None)
        return messages

    def invalidate(self, channel_name: str) -> None:
        self._entries.pop(channel_name, None)


# =============================================================================
# Prompt Formatting
# =============================================================================

def _format_time(ts: str) -> str:
    """Extract HH:MM from an ISO timestamp."""
    if not ts:
        return "--:--"
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00")).strftime("%H:%M")
    except ValueError:
        # nanosecond timestamps from the board are too long for older fromisoformat
        if len(ts) >= 16 and ts[10] in "T ":
            return ts[11:16]
        return ts[:16]


def _format_message(msg: BoardMessage) -> str:
    content = " ".join(msg.content.split())
    if len(content) > CONTEXT_LINE_MAX:
        content = content[:CONTEXT_LINE_MAX] + "..."
    sender = f"{msg.author} ({msg.author_role})" if msg.author_role else msg.author
    return f"[{_format_time(msg.timestamp)}] {sender}: {content}"


def format_context(messages: list[BoardMessage]) -> str:
    """Render most-recent-first history as chronological, one line per message."""
    if not messages:
        return "(no recent messages)"
    return "\n".join(_format_message(m) for m in reversed(messages))
