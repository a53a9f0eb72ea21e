"""
State persistence — the per-agent device token store.

Tokens are issued by an agent gateway after the first successful pairing and
replace that agent's shared secret for every later connect.

Depends on: config
"""

import fcntl
import json
import os
import sys
import threading
from typing import Optional

from mentionrouter.config import DEVICE_TOKENS_FILE


class DeviceTokenStore:
    """agent id -> device token, persisted as one owner-only JSON file.

    Writes rewrite the whole file under a lock; they only happen on pairing
    and token refresh, so the cost does not matter.
    """

    def __init__(self, path: Optional[str] = DEVICE_TOKENS_FILE):
        self.path = path
        self._tokens: dict[str, str] = {}
        self._write_lock = threading.Lock()

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def get(self, agent_id: str) -> Optional[str]:
        return self._tokens.get(agent_id)

    def credential_for(self, agent_id: str, shared_secret: str) -> str:
        """Stored device token if present, else the shared secret."""
        return self._tokens.get(agent_id) or shared_secret or ""

    def store(self, agent_id: str, token: str) -> None:
        self._tokens[agent_id] = token
        self.save()
        print(f"[MentionRouter] Stored device token for \"{agent_id}\"", file=sys.stderr)

    def discard(self, agent_id: str) -> bool:
        """Forget a token the gateway declared stale. Returns True if one was held."""
        if self._tokens.pop(agent_id, None) is None:
            return False
        self.save()
        return True

    # -- Persistence --

    def load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            print(f"[MentionRouter] Warning: could not load device tokens: {e}", file=sys.stderr)
            return
        if not isinstance(data, dict):
            print(f"[MentionRouter] Warning: device token file {self.path} is not an object, ignoring",
                  file=sys.stderr)
            return
        self._tokens = {str(k): v for k, v in data.items() if isinstance(v, str) and v}
        print(f"[MentionRouter] Loaded {len(self._tokens)} stored device token(s)", file=sys.stderr)

    def save(self) -> None:
        if not self.path:
            return
        tmp = self.path + ".tmp"
        with self._write_lock:
            try:
                os.makedirs(os.path.dirname(self.path) or ".", mode=0o700, exist_ok=True)
                fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "w") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        json.dump(self._tokens, f, indent=2)
                        f.write("\n")
                        f.flush()
                        os.fsync(f.fileno())
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                os.replace(tmp, self.path)
            except OSError as e:
                print(f"[MentionRouter] Warning: could not save device tokens: {e}", file=sys.stderr)
