"""
Wake debounce — at most one wake per agent per window.

The window is checked when a wake is requested, not when it is delivered.
A wake that is still waiting for a reconnect therefore blocks later requests
for the same agent until the window passes.

Depends on: config
"""

import time
from typing import Callable

from mentionrouter.config import WAKE_DEBOUNCE_SECONDS


class WakeDebouncer:
    """agent id -> time of the last accepted wake request."""

    def __init__(self, window: float = WAKE_DEBOUNCE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._last_wake: dict[str, float] = {}

    def is_open(self, agent_id: str) -> bool:
        """True if a wake for agent_id would be accepted right now. Does not record."""
        last = self._last_wake.get(agent_id)
        return last is None or self._clock() - last >= self.window

    def try_acquire(self, agent_id: str) -> bool:
        """Check-then-record. Returns False if agent_id is inside its window."""
        if not self.is_open(agent_id):
            return False
        self._last_wake[agent_id] = self._clock()
        return True

    def remaining(self, agent_id: str) -> float:
        last = self._last_wake.get(agent_id)
        if last is None:
            return 0.0
        return max(0.0, self.window - (self._clock() - last))
