"""
Agent gateway client — wire protocol, per-agent connections, connection manager.
"""

from mentionrouter.gateway.connection import AgentConnection, open_websocket
from mentionrouter.gateway.manager import ConnectionManager
from mentionrouter.gateway.protocol import RequestResult

__all__ = ["AgentConnection", "ConnectionManager", "RequestResult", "open_websocket"]
