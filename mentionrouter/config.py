"""
Configuration constants, environment variables, and agent roster loading.

Depends on: models
"""

import json
import os
import sys
from typing import Optional

from mentionrouter.models import AgentEndpoint

# =============================================================================
# Meeting Board
# =============================================================================

MEETING_BOARD_URL = os.environ.get("MEETING_BOARD_URL", "http://meeting-board:8080").rstrip("/")
MEETING_BOARD_WS_URL = os.environ.get("MEETING_BOARD_WS_URL", "ws://meeting-board:8080/ws")
BOARD_API_URL = f"{MEETING_BOARD_URL}/api"
BOARD_HTTP_TIMEOUT = 10.0
CHANNEL_REFRESH_INTERVAL = float(os.environ.get("CHANNEL_REFRESH_SECONDS", "300"))
BOARD_RECONNECT_DELAY = float(os.environ.get("BOARD_RECONNECT_SECONDS", "3"))

# =============================================================================
# Gateway Protocol
# =============================================================================

PROTOCOL_VERSION = 3
CLIENT_ID = "gateway-client"
CLIENT_MODE = "backend"
CLIENT_VERSION = "1.0.0"
CLIENT_PLATFORM = "linux"
CLIENT_ROLE = "operator"
CLIENT_SCOPES = ["operator.admin"]
PAYLOAD_DELIMITER = "|"

# Error codes / message conventions sent by agent gateways
ERROR_NOT_PAIRED = "NOT_PAIRED"
STALE_TOKEN_MARKER = "token mismatch"

# =============================================================================
# Connection Lifecycle
# =============================================================================

TRANSPORT_OPEN_TIMEOUT = 10.0
CONNECT_GRACE_DELAY = 0.75          # wait this long for connect.challenge before sending unchallenged
CONNECT_REQUEST_TIMEOUT = 10.0
WAKE_REQUEST_TIMEOUT = 15.0
PAIRING_RETRY_DELAY = 2.0           # time for the auto-approve daemon to register us
PAIRING_MAX_RETRIES = 3             # NOT_PAIRED retries before falling back to normal backoff
RECONNECT_MIN_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
KEEPALIVE_INTERVAL = 20.0
KEEPALIVE_TIMEOUT = 10.0

# =============================================================================
# Dispatch
# =============================================================================

WAKE_DEBOUNCE_SECONDS = int(os.environ.get("WAKE_DEBOUNCE_MS", "30000")) / 1000.0
CONTEXT_MESSAGES_LIMIT = int(os.environ.get("CONTEXT_MESSAGES_LIMIT", "20"))
CONTEXT_CACHE_TTL = float(os.environ.get("CONTEXT_CACHE_TTL_SECONDS", "15"))
CONTEXT_LINE_MAX = 200
EXCERPT_MAX = 300
EVERYONE_MENTION = "everyone"

# =============================================================================
# Relevance Observer
# =============================================================================

OBSERVER_ENABLED = os.environ.get("OBSERVER_ENABLED", "false").lower() == "true"
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ANTHROPIC_API_URL = os.environ.get("ANTHROPIC_API_URL", "https://api.anthropic.com").rstrip("/")
ANTHROPIC_VERSION = "2023-06-01"
OBSERVER_MODEL = os.environ.get("OBSERVER_MODEL", "claude-haiku-4-5-20251001")
OBSERVER_MAX_TOKENS = int(os.environ.get("OBSERVER_MAX_TOKENS", "256"))
OBSERVER_TIMEOUT = float(os.environ.get("OBSERVER_TIMEOUT_SECONDS", "10"))

# Cheap pre-filter: a broadcast must contain one of these before the
# judgment service is consulted. Spans every role on the team.
DOMAIN_KEYWORDS = frozenset({
    # po
    "ticket", "story", "backlog", "priority", "requirement", "acceptance", "sprint",
    "roadmap", "scope", "stakeholder", "deadline", "milestone",
    # dev
    "bug", "code", "implement", "feature", "refactor", "api", "endpoint", "branch",
    "commit", "pr", "pull request", "merge", "build", "compile", "function",
    # cq
    "review", "lint", "security", "vulnerability", "quality", "static analysis",
    "code smell", "approve", "reject",
    # qa
    "test", "qa", "regression", "reproduce", "repro", "failing", "broken", "crash",
    "verify", "screenshot", "playwright",
    # ops
    "deploy", "release", "production", "staging", "docker", "kubernetes", "k8s",
    "pipeline", "ci", "cd", "outage", "monitoring", "rollback", "infra",
})

ROLE_DESCRIPTIONS = {
    "po": "Project Owner: owns the vision, creates tickets, assigns work, runs meetings, talks to humans.",
    "dev": "Developer: writes code, picks up stories, creates PRs, iterates on feedback.",
    "cq": "Code Quality: reviews code, security gatekeeper, passes or fails PRs.",
    "qa": "Quality Assurance: tests against acceptance criteria, reports failures with evidence.",
    "ops": "DevOps: deploys to production, manages infrastructure, CI/CD and monitoring.",
}

# =============================================================================
# Persistence
# =============================================================================

STATE_DIR = os.environ.get(
    "ROUTER_STATE_DIR",
    os.path.join(os.environ.get("HOME", "/tmp"), ".openclaw", "identity"),
)
IDENTITY_FILE = os.path.join(STATE_DIR, "device.json")
DEVICE_TOKENS_FILE = os.path.join(STATE_DIR, "device-tokens.json")

# =============================================================================
# Status Server
# =============================================================================

STATUS_ENABLED = os.environ.get("ROUTER_STATUS_ENABLED", "true").lower() == "true"
STATUS_HOST = os.environ.get("ROUTER_STATUS_HOST", "0.0.0.0")
STATUS_PORT = int(os.environ.get("ROUTER_STATUS_PORT", "8090"))

# =============================================================================
# Agent Roster
# =============================================================================

DEFAULT_AGENT_IDS = ["po", "dev", "cq", "qa", "ops"]


def _endpoint_from_dict(agent_id: str, d: dict) -> Optional[AgentEndpoint]:
    url = d.get("url") or d.get("transportAddress")
    if not url:
        print(f"[MentionRouter] Roster entry '{agent_id}' has no gateway url, it will never be woken",
              file=sys.stderr)
        return None
    return AgentEndpoint(
        id=agent_id,
        display_name=d.get("name") or agent_id,
        role=d.get("role") or agent_id,
        transport_address=url,
        shared_secret=d.get("token") or "",
    )


def parse_roster(data) -> dict[str, AgentEndpoint]:
    """Parse roster JSON in either the object form or the array form."""
    roster: dict[str, AgentEndpoint] = {}
    if isinstance(data, list):
        items = [(str(entry.get("id", "")), entry) for entry in data if isinstance(entry, dict)]
    elif isinstance(data, dict):
        items = [(str(k), v) for k, v in data.items() if isinstance(v, dict)]
    else:
        raise ValueError(f"roster must be a JSON object or array, got {type(data).__name__}")

    for agent_id, entry in items:
        if not agent_id:
            continue
        endpoint = _endpoint_from_dict(agent_id, entry)
        if endpoint is not None:
            roster[agent_id] = endpoint
    return roster


def roster_from_env(environ=None) -> dict[str, AgentEndpoint]:
    """Build a roster from <ID>_GATEWAY_URL / <ID>_GATEWAY_TOKEN variables."""
    environ = os.environ if environ is None else environ
    roster: dict[str, AgentEndpoint] = {}
    for agent_id in DEFAULT_AGENT_IDS:
        upper = agent_id.upper()
        url = environ.get(f"{upper}_GATEWAY_URL")
        token = environ.get(f"{upper}_GATEWAY_TOKEN")
        if url and token:
            roster[agent_id] = AgentEndpoint(
                id=agent_id,
                display_name=agent_id,
                role=agent_id,
                transport_address=url,
                shared_secret=token,
            )
    return roster


def load_agent_roster(path: Optional[str] = None) -> dict[str, AgentEndpoint]:
    """Load the agent roster from AGENTS_CONFIG, falling back to env vars."""
    path = path if path is not None else os.environ.get("AGENTS_CONFIG")
    if path:
        try:
            with open(path, "r") as f:
                roster = parse_roster(json.load(f))
            print(f"[MentionRouter] Agent config loaded from {path}: "
                  f"{', '.join(roster) or '(none)'}", file=sys.stderr)
            return roster
        except (OSError, ValueError) as e:
            print(f"[MentionRouter] Warning: could not load agent config from {path}: {e}",
                  file=sys.stderr)

    roster = roster_from_env()
    print(f"[MentionRouter] Agent config loaded from env vars: "
          f"{', '.join(roster) or '(none)'}", file=sys.stderr)
    return roster
