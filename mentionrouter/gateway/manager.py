"""
ConnectionManager — the single entry point for waking an agent.

Owns agent id -> AgentConnection. Debounce is applied here, before any
connection or delivery work, so it bounds how often an agent is woken
regardless of how long delivery takes.

Depends on: models, gateway/connection
"""

import asyncio
import sys
from typing import Optional

from mentionrouter.gateway.connection import AgentConnection
from mentionrouter.models import RouterContext


class ConnectionManager:
    """Creates gateway connections lazily (or eagerly at startup) and submits wakes."""

    def __init__(self, ctx: RouterContext, **connection_options):
        self._ctx = ctx
        self._connection_options = connection_options
        self._connections: dict[str, AgentConnection] = {}
        self._wake_tasks: set[asyncio.Task] = set()
        self._unknown_logged: set[str] = set()

    def connection(self, agent_id: str) -> Optional[AgentConnection]:
        """Look up or create the connection for a roster agent. None if not in the roster."""
        conn = self._connections.get(agent_id)
        if conn is not None:
            return conn
        endpoint = self._ctx.roster.get(agent_id)
        if endpoint is None:
            if agent_id not in self._unknown_logged:
                self._unknown_logged.add(agent_id)
                print(f"[MentionRouter]   No gateway config for \"{agent_id}\", it will not be woken",
                      file=sys.stderr)
            return None
        conn = AgentConnection(endpoint, self._ctx.identity, self._ctx.tokens, **self._connection_options)
        self._connections[agent_id] = conn
        return conn

    @property
    def connections(self) -> dict[str, AgentConnection]:
        return self._connections

    def start_all(self) -> None:
        """Eagerly connect to every roster agent so the first wake is fast."""
        print(f"[MentionRouter] Connecting to {len(self._ctx.roster)} agent gateway(s)...", file=sys.stderr)
        for agent_id in self._ctx.roster:
            self.connection(agent_id).ensure_started()

    def wake(self, agent_id: str, text: str) -> bool:
        """Request a wake. Returns True if it was accepted (not debounced, agent known).

        Delivery happens in the background; failures are logged, never raised.
        """
        if agent_id not in self._ctx.roster:
            self.connection(agent_id)
            return False

        debouncer = self._ctx.debouncer
        if not debouncer.try_acquire(agent_id):
            print(f"[MentionRouter]   Debounced wake for \"{agent_id}\" "
                  f"(woken <{debouncer.window:g}s ago)", file=sys.stderr)
            return False

        conn = self.connection(agent_id)
        print(f"[MentionRouter]   Waking \"{agent_id}\" via {conn.endpoint.transport_address}", file=sys.stderr)
        task = asyncio.create_task(conn.wake(text), name=f"wake:{agent_id}")
        self._wake_tasks.add(task)
        task.add_done_callback(self._on_wake_done)
        return True

    def _on_wake_done(self, task: asyncio.Task) -> None:
        self._wake_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print(f"[MentionRouter]   Wake task {task.get_name()} failed: {exc!r}", file=sys.stderr)

    async def drain(self) -> None:
        """Wait for wake submissions currently in flight."""
        while self._wake_tasks:
            await asyncio.gather(*list(self._wake_tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._wake_tasks):
            task.cancel()
        await asyncio.gather(*list(self._wake_tasks), return_exceptions=True)
        await asyncio.gather(*(conn.close() for conn in self._connections.values()),
                             return_exceptions=True)

    def snapshot(self) -> dict:
        return {agent_id: conn.describe() for agent_id, conn in self._connections.items()}
