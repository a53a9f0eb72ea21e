"""
Application composition root — build_router(), run(), main entry point.

This is the top-level module that wires everything together.
Depends on: everything
"""

import sys
from dataclasses import dataclass
from typing import Optional

import anyio
import uvicorn

from mentionrouter.board import BoardClient, ChannelWatcher
from mentionrouter.config import (
    ANTHROPIC_API_KEY,
    DEVICE_TOKENS_FILE,
    IDENTITY_FILE,
    MEETING_BOARD_URL,
    MEETING_BOARD_WS_URL,
    OBSERVER_ENABLED,
    OBSERVER_MODEL,
    STATUS_ENABLED,
    STATUS_HOST,
    STATUS_PORT,
    WAKE_DEBOUNCE_SECONDS,
    load_agent_roster,
)
from mentionrouter.context import ChannelContextCache
from mentionrouter.debounce import WakeDebouncer
from mentionrouter.gateway.manager import ConnectionManager
from mentionrouter.identity import load_or_create_identity
from mentionrouter.models import AgentEndpoint, RouterContext
from mentionrouter.observer import JudgmentClient, RelevanceObserver
from mentionrouter.router import BroadcastPipeline, MentionDispatcher
from mentionrouter.state import DeviceTokenStore
from mentionrouter.status import create_status_app


# =============================================================================
# Wiring
# =============================================================================

@dataclass
class MentionRouter:
    ctx: RouterContext
    manager: ConnectionManager
    observer: RelevanceObserver
    pipeline: BroadcastPipeline
    watcher: ChannelWatcher


def build_context(roster: dict[str, AgentEndpoint], board: BoardClient, *,
                  identity_path: str = IDENTITY_FILE,
                  tokens_path: Optional[str] = DEVICE_TOKENS_FILE) -> RouterContext:
    """Load identity and stored tokens, and set up the shared dispatch state."""
    identity = load_or_create_identity(identity_path)
    tokens = DeviceTokenStore(tokens_path)
    tokens.load()
    return RouterContext(
        identity=identity,
        roster=roster,
        tokens=tokens,
        debouncer=WakeDebouncer(WAKE_DEBOUNCE_SECONDS),
        context_cache=ChannelContextCache(board),
    )


def build_router(ctx: RouterContext, board: BoardClient, *,
                 judge: Optional[JudgmentClient] = None,
                 observer_enabled: bool = OBSERVER_ENABLED,
                 ws_url: str = MEETING_BOARD_WS_URL,
                 **connection_options) -> MentionRouter:
    manager = ConnectionManager(ctx, **connection_options)
    observer = RelevanceObserver(ctx, manager, judge, enabled=observer_enabled)
    pipeline = BroadcastPipeline(MentionDispatcher(ctx, manager), observer)
    watcher = ChannelWatcher(board, pipeline.handle, channel_names=ctx.channel_names, ws_url=ws_url)
    return MentionRouter(ctx=ctx, manager=manager, observer=observer, pipeline=pipeline, watcher=watcher)


# =============================================================================
# Running
# =============================================================================

def print_startup_banner(router: MentionRouter) -> None:
    """Print startup banner to stderr."""
    ctx = router.ctx
    print(f"[MentionRouter] Meeting Board: {MEETING_BOARD_URL} (push: {MEETING_BOARD_WS_URL})", file=sys.stderr)
    print(f"[MentionRouter] Device: {ctx.identity.device_id[:12]}... "
          f"({len(ctx.tokens)} stored device token(s))", file=sys.stderr)
    print(f"[MentionRouter] Agents: {', '.join(ctx.roster) or '(none)'}", file=sys.stderr)
    print(f"[MentionRouter] Wake debounce: {ctx.debouncer.window:g}s", file=sys.stderr)
    if router.observer.active:
        observer_info = f"ENABLED ({OBSERVER_MODEL})"
    elif router.observer.enabled:
        observer_info = "disabled (no ANTHROPIC_API_KEY)"
    else:
        observer_info = "disabled"
    print(f"[MentionRouter] Relevance observer: {observer_info}", file=sys.stderr)


async def run(router: MentionRouter, *, status_enabled: bool = STATUS_ENABLED,
              host: str = STATUS_HOST, port: int = STATUS_PORT) -> None:
    """Run the watcher, eager gateway connects and the status server until cancelled."""
    router.manager.start_all()
    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(router.watcher.run)
            if status_enabled:
                app = create_status_app(router.ctx, router.manager, router.watcher, router.observer)
                server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
                print(f"[MentionRouter] Status: http://{host}:{port}/status", file=sys.stderr)
                tg.start_soon(server.serve)
    finally:
        router.watcher.stop()
        with anyio.CancelScope(shield=True):
            await router.pipeline.drain()
            await router.manager.close()
        print("[MentionRouter] Stopped", file=sys.stderr)


def main() -> None:
    """Console entry point."""
    roster = load_agent_roster()
    if not roster:
        print("[MentionRouter] Warning: no agents configured, mentions will be logged but never delivered",
              file=sys.stderr)

    board = BoardClient()
    ctx = build_context(roster, board)
    judge = JudgmentClient(ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None
    router = build_router(ctx, board, judge=judge)
    print_startup_banner(router)

    try:
        anyio.run(run, router)
    except KeyboardInterrupt:
        print("[MentionRouter] Interrupted, shutting down", file=sys.stderr)


if __name__ == "__main__":
    main()
