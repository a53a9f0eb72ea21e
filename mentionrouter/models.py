"""
Data models — pure data classes with no business logic.

This is a leaf module with no internal dependencies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    from mentionrouter.context import ChannelContextCache
    from mentionrouter.debounce import WakeDebouncer
    from mentionrouter.state import DeviceTokenStore


# =============================================================================
# Enums
# =============================================================================

class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CHALLENGED = "challenged"        # connect.challenge received, signed connect in flight
    AUTHENTICATED = "authenticated"


# =============================================================================
# Agents & Identity
# =============================================================================

@dataclass(frozen=True)
class AgentEndpoint:
    """Static roster entry for one agent gateway. Immutable for process lifetime."""
    id: str
    display_name: str
    role: str
    transport_address: str
    shared_secret: str = ""


@dataclass
class DeviceIdentity:
    """The router's Ed25519 device identity, shared by every gateway connection."""
    device_id: str                   # sha256(raw public key) hex
    public_key_pem: str
    private_key_pem: str
    created_at_ms: int
    # Parsed from private_key_pem on first use by identity.private_key_of; never persisted
    signing_key: Optional["Ed25519PrivateKey"] = field(default=None, repr=False, compare=False)


# =============================================================================
# Board
# =============================================================================

@dataclass
class Channel:
    id: str
    name: str


@dataclass
class BroadcastEvent:
    """A normalized push event from the meeting board."""
    author_id: str
    content: str
    channel_id: str
    mentions: list[str] = field(default_factory=list)
    author_name: Optional[str] = None


@dataclass
class BoardMessage:
    """One historical message fetched for conversation context."""
    author: str
    content: str
    timestamp: str = ""
    author_role: Optional[str] = None


@dataclass
class ContextCacheEntry:
    messages: list[BoardMessage]
    fetched_at: float


# =============================================================================
# Observer
# =============================================================================

@dataclass
class ObserverVerdict:
    """Parsed judgment-service reply."""
    wake: list[str] = field(default_factory=list)
    reason: str = ""


# =============================================================================
# Router Context (top-level)
# =============================================================================

@dataclass
class RouterContext:
    """Explicitly owned shared state, handed to every component at construction."""
    identity: DeviceIdentity
    roster: dict[str, AgentEndpoint]
    tokens: "DeviceTokenStore"
    debouncer: "WakeDebouncer"
    context_cache: "ChannelContextCache"
    channel_names: dict[str, str] = field(default_factory=dict)   # channel id -> name

    def channel_name(self, channel_id: str) -> str:
        return self.channel_names.get(channel_id, channel_id)
