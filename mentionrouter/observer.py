"""
Relevance observer — stage 2 of dispatch.

Asks an external judgment service which not-yet-woken agents should look at
a broadcast. Guarded by a local keyword pre-filter so ordinary chatter never
costs a judgment call. Every failure mode (timeout, HTTP error, reply
without parseable JSON) means "wake nobody".

Depends on: config, models, context, gateway/manager
"""

import asyncio
import json
import re
import sys
from typing import Optional

import httpx

from mentionrouter.config import (
    ANTHROPIC_API_URL,
    ANTHROPIC_VERSION,
    DOMAIN_KEYWORDS,
    EXCERPT_MAX,
    OBSERVER_ENABLED,
    OBSERVER_MAX_TOKENS,
    OBSERVER_MODEL,
    OBSERVER_TIMEOUT,
    ROLE_DESCRIPTIONS,
)
from mentionrouter.context import format_context
from mentionrouter.gateway.manager import ConnectionManager
from mentionrouter.models import AgentEndpoint, BroadcastEvent, ObserverVerdict, RouterContext


# =============================================================================
# Pre-filter
# =============================================================================

# Inflections accepted after a keyword: tests, deployed, releasing, deployment...
_KEYWORD_SUFFIXES = r"(?:s|es|d|ed|ing|er|ers|ment|ments|ation|ations)?"


def _keyword_stem(keyword: str) -> str:
    # release -> releas(e)  so that "releasing" matches
    if len(keyword) > 3 and keyword.endswith("e"):
        return re.escape(keyword[:-1]) + "e?"
    return re.escape(keyword)


def compile_keywords(keywords) -> re.Pattern:
    stems = sorted((_keyword_stem(k) for k in keywords), key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(stems) + r")" + _KEYWORD_SUFFIXES + r"\b", re.IGNORECASE)


_KEYWORD_PATTERN = compile_keywords(DOMAIN_KEYWORDS)


def passes_prefilter(text: str, pattern: re.Pattern = _KEYWORD_PATTERN) -> bool:
    """True if text mentions a domain keyword or one of its inflections.

    Matches start on a word boundary and end on one, so short keywords like
    "pr" or "ci" never fire inside "probably" or "city".
    """
    return bool(text) and pattern.search(text) is not None


# =============================================================================
# Reply parsing
# =============================================================================

def _balanced_object_end(text: str, start: int) -> int:
    """Index just past the object opened at text[start], or -1 if it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def extract_json_object(text: str) -> Optional[dict]:
    """First balanced JSON object embedded in free text, or None."""
    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end != -1:
            try:
                obj = json.loads(text[start:end])
            except ValueError:
                obj = None
            if isinstance(obj, dict):
                return obj
        start = text.find("{", start + 1)
    return None


def parse_verdict(text: str) -> Optional[ObserverVerdict]:
    obj = extract_json_object(text or "")
    if obj is None:
        return None
    wake = obj.get("wake")
    if not isinstance(wake, list):
        return None
    reason = obj.get("reason")
    return ObserverVerdict(
        wake=[str(w) for w in wake if isinstance(w, str) and w],
        reason=reason if isinstance(reason, str) else "",
    )


# =============================================================================
# Prompts
# =============================================================================

def role_description(endpoint: AgentEndpoint) -> str:
    return (
        ROLE_DESCRIPTIONS.get(endpoint.role.lower())
        or ROLE_DESCRIPTIONS.get(endpoint.id)
        or endpoint.role
    )


def _excerpt(content: str) -> str:
    return content if len(content) <= EXCERPT_MAX else content[:EXCERPT_MAX] + "..."


def build_observer_prompt(channel_name: str, author: str, content: str,
                          candidates: list[AgentEndpoint], context_block: str) -> str:
    roster_lines = "\n".join(
        f"- {c.id} ({c.display_name}): {role_description(c)}" for c in candidates
    )
    return (
        f"You triage messages for a software team's Meeting Board.\n"
        f"A new message was posted in #{channel_name} by {author}:\n"
        f"\"{_excerpt(content)}\"\n"
        f"\n"
        f"Recent conversation in #{channel_name} (oldest first):\n"
        f"{context_block}\n"
        f"\n"
        f"Team members who have NOT been notified yet:\n"
        f"{roster_lines}\n"
        f"\n"
        f"Decide which of these team members, if any, need to act on this message now. "
        f"Only pick someone when the message clearly concerns their role. "
        f"Waking nobody is the right answer for small talk or for work that is already handled.\n"
        f"\n"
        f"Reply with a single JSON object and nothing else:\n"
        f"{{\"wake\": [\"<id>\", ...], \"reason\": \"<one short sentence>\"}}"
    )


def compose_observer_wake(channel_name: str, author: str, content: str, context_block: str) -> str:
    return (
        f"FYI: there is activity in #{channel_name} that may concern you.\n"
        f"{author} wrote: \"{_excerpt(content)}\"\n"
        f"\n"
        f"Recent conversation in #{channel_name}:\n"
        f"{context_block}\n"
        f"\n"
        f"You were not mentioned directly. Take a look if it touches your work; "
        f"if nothing is needed from you, do nothing."
    )


# =============================================================================
# Judgment service
# =============================================================================

class JudgmentClient:
    """Minimal Messages API client. Returns reply text, or None on any failure."""

    def __init__(self, api_key: str, *, api_url: str = ANTHROPIC_API_URL,
                 model: str = OBSERVER_MODEL, max_tokens: int = OBSERVER_MAX_TOKENS,
                 timeout: float = OBSERVER_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    async def _post(self, prompt: str) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{self.api_url}/v1/messages",
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                json={
                    "model": self.model,
                    "max_tokens": self.max_tokens,
                    "messages": [{"role": "user", "content": prompt}],
                },
            )
            resp.raise_for_status()
            return resp.json()

    async def complete(self, prompt: str) -> Optional[str]:
        try:
            data = await asyncio.wait_for(self._post(prompt), self.timeout)
        except asyncio.TimeoutError:
            print(f"[MentionRouter] Observer: judgment call timed out after {self.timeout:g}s", file=sys.stderr)
            return None
        except (httpx.HTTPError, ValueError) as e:
            print(f"[MentionRouter] Observer: judgment call failed: {e!r}", file=sys.stderr)
            return None

        blocks = data.get("content") if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            print("[MentionRouter] Observer: judgment reply has no content", file=sys.stderr)
            return None
        return "".join(
            b.get("text", "") for b in blocks
            if isinstance(b, dict) and b.get("type") == "text"
        )


# =============================================================================
# Observer
# =============================================================================

class RelevanceObserver:
    def __init__(self, ctx: RouterContext, manager: ConnectionManager,
                 judge: Optional[JudgmentClient], *, enabled: bool = OBSERVER_ENABLED):
        self._ctx = ctx
        self._manager = manager
        self._judge = judge
        self.enabled = enabled
        self.judgment_calls = 0

    @property
    def active(self) -> bool:
        return self.enabled and self._judge is not None and bool(self._judge.api_key)

    def candidates(self, event: BroadcastEvent, mention_woken: set[str]) -> list[AgentEndpoint]:
        """Roster agents not yet woken, not the author, and outside their debounce window."""
        return [
            endpoint for agent_id, endpoint in self._ctx.roster.items()
            if agent_id not in mention_woken
            and agent_id != event.author_id
            and self._ctx.debouncer.is_open(agent_id)
        ]

    async def evaluate(self, event: BroadcastEvent, mention_woken: set[str]) -> list[str]:
        """Judge a broadcast and wake whoever it concerns. Returns the ids woken."""
        if not self.active or not event.content or not event.channel_id:
            return []
        if not passes_prefilter(event.content):
            return []

        candidates = self.candidates(event, mention_woken)
        if not candidates:
            return []

        channel_name = self._ctx.channel_name(event.channel_id)
        messages = await self._ctx.context_cache.get(channel_name)
        if not messages:
            print(f"[MentionRouter] Observer: no context for #{channel_name}, skipping", file=sys.stderr)
            return []

        author = event.author_name or event.author_id or "someone"
        context_block = format_context(messages)
        self.judgment_calls += 1
        reply = await self._judge.complete(
            build_observer_prompt(channel_name, author, event.content, candidates, context_block)
        )
        if reply is None:
            return []
        verdict = parse_verdict(reply)
        if verdict is None:
            print(f"[MentionRouter] Observer: unparseable verdict: {reply[:120]!r}", file=sys.stderr)
            return []

        print(f"[MentionRouter] Observer verdict for #{channel_name}: wake={verdict.wake or '[]'} "
              f"({verdict.reason or 'no reason'})", file=sys.stderr)
        text = compose_observer_wake(channel_name, author, event.content, context_block)
        woken = []
        for agent_id in dict.fromkeys(verdict.wake):
            if agent_id not in self._ctx.roster or agent_id in mention_woken or agent_id == event.author_id:
                continue
            if self._manager.wake(agent_id, text):
                woken.append(agent_id)
        return woken
