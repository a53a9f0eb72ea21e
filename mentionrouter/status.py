"""
Status endpoints — read-only view of the router for health checks and operators.

Depends on: models, board, gateway/manager, observer
"""

from typing import Optional

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, Router

from mentionrouter.board import ChannelWatcher
from mentionrouter.gateway.manager import ConnectionManager
from mentionrouter.models import RouterContext
from mentionrouter.observer import RelevanceObserver


def status_snapshot(ctx: RouterContext, manager: ConnectionManager,
                    watcher: Optional[ChannelWatcher] = None,
                    observer: Optional[RelevanceObserver] = None) -> dict:
    connections = manager.connections
    agents = {}
    for agent_id in ctx.roster:
        conn = connections.get(agent_id)
        if conn is None:
            agents[agent_id] = {"status": "disconnected", "backoff": None, "queued_wake": False}
        else:
            info = conn.describe()
            agents[agent_id] = {
                "status": info["status"],
                "backoff": info["backoff"],
                "queued_wake": info["queued_wake"],
            }
    return {
        "device_id": ctx.identity.device_id,
        "roster_size": len(ctx.roster),
        "observer_enabled": observer is not None and observer.active,
        "subscribed_channels": len(watcher.subscribed) if watcher is not None else 0,
        "agents": agents,
    }


def create_status_app(ctx: RouterContext, manager: ConnectionManager,
                      watcher: Optional[ChannelWatcher] = None,
                      observer: Optional[RelevanceObserver] = None) -> Router:
    async def handle_health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    async def handle_status(request: Request) -> JSONResponse:
        """Connection state per agent. Queued wake text and credentials are never exposed."""
        return JSONResponse(status_snapshot(ctx, manager, watcher, observer))

    return Router(routes=[
        Route("/health", handle_health, methods=["GET"]),
        Route("/status", handle_status, methods=["GET"]),
    ])
