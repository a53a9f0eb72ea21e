"""
Broadcast routing — stage 1 (explicit @mentions) and the dispatch pipeline.

Every broadcast runs in its own task: mention dispatch first, then the
relevance observer with the set of agents the mentions already woke.

Depends on: config, models, context, gateway/manager, observer
"""

import asyncio
import sys
from typing import Optional

from mentionrouter.config import EVERYONE_MENTION, EXCERPT_MAX
from mentionrouter.context import format_context
from mentionrouter.gateway.manager import ConnectionManager
from mentionrouter.models import BroadcastEvent, RouterContext
from mentionrouter.observer import RelevanceObserver


# =============================================================================
# Mention expansion
# =============================================================================

def expand_mentions(mentions: list[str], roster_ids) -> list[str]:
    """Expand @everyone to the whole roster; keep first-seen order, no duplicates."""
    expanded: list[str] = []
    for mentioned in mentions:
        names = list(roster_ids) if mentioned.lower() == EVERYONE_MENTION else [mentioned]
        for name in names:
            if name not in expanded:
                expanded.append(name)
    return expanded


def excerpt(content: str, limit: int = EXCERPT_MAX) -> str:
    return content if len(content) <= limit else content[:limit] + "..."


def compose_mention_wake(agent_id: str, author: str, channel_name: str,
                         content: str, context_block: str) -> str:
    return (
        f"@{agent_id} mentioned by {author} in #{channel_name}: \"{excerpt(content)}\"\n"
        f"\n"
        f"Recent conversation in #{channel_name}:\n"
        f"{context_block}\n"
        f"\n"
        f"You were addressed directly. Read the thread on the Meeting Board and reply in #{channel_name}."
    )


# =============================================================================
# Stage 1: Mention Dispatcher
# =============================================================================

class MentionDispatcher:
    def __init__(self, ctx: RouterContext, manager: ConnectionManager):
        self._ctx = ctx
        self._manager = manager

    def addressees(self, event: BroadcastEvent) -> list[str]:
        """Roster agents explicitly addressed by a broadcast, minus its author."""
        if not event.mentions:
            return []
        return [
            agent_id for agent_id in expand_mentions(event.mentions, self._ctx.roster)
            if agent_id != event.author_id and agent_id in self._ctx.roster
        ]

    async def dispatch(self, event: BroadcastEvent) -> set[str]:
        """Wake every addressee. Returns the mention-woken set for the observer."""
        targets = self.addressees(event)
        if not targets:
            return set()

        channel_name = self._ctx.channel_name(event.channel_id)
        author = event.author_name or event.author_id or "someone"
        context_block = format_context(await self._ctx.context_cache.get(channel_name))

        for agent_id in targets:
            print(f"[MentionRouter] Detected @mention for \"{agent_id}\" by \"{author}\" in #{channel_name}",
                  file=sys.stderr)
            self._manager.wake(
                agent_id,
                compose_mention_wake(agent_id, author, channel_name, event.content, context_block),
            )
        return set(targets)


# =============================================================================
# Pipeline
# =============================================================================

class BroadcastPipeline:
    """Fans each broadcast out to its own task so the watcher never blocks."""

    def __init__(self, mentions: MentionDispatcher, observer: Optional[RelevanceObserver] = None):
        self.mentions = mentions
        self.observer = observer
        self._tasks: set[asyncio.Task] = set()

    def handle(self, event: BroadcastEvent) -> None:
        task = asyncio.create_task(self.process(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process(self, event: BroadcastEvent) -> None:
        try:
            mention_woken = await self.mentions.dispatch(event)
        except Exception as e:
            print(f"[MentionRouter] Mention dispatch failed: {e!r}", file=sys.stderr)
            mention_woken = set()

        if self.observer is None:
            return
        try:
            await self.observer.evaluate(event, mention_woken)
        except Exception as e:
            print(f"[MentionRouter] Observer failed: {e!r}", file=sys.stderr)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
