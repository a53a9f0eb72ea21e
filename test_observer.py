"""
Tests for the relevance observer: keyword pre-filter, reply parsing, judgment
client, and who ends up woken.
"""

import json

import httpx
import pytest

from mentionrouter.models import BroadcastEvent
from mentionrouter.observer import (
    JudgmentClient,
    RelevanceObserver,
    build_observer_prompt,
    compose_observer_wake,
    extract_json_object,
    parse_verdict,
    passes_prefilter,
)
from mentionrouter.router import BroadcastPipeline, MentionDispatcher


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class JudgeService:
    """httpx.MockTransport handler playing the judgment service."""

    def __init__(self, reply_text: str = '{"wake": [], "reason": "nothing to do"}', status: int = 200):
        self.reply_text = reply_text
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json={"content": [{"type": "text", "text": self.reply_text}]})

    @property
    def prompts(self) -> list[str]:
        return [json.loads(r.content)["messages"][0]["content"] for r in self.requests]


def make_observer(ctx, manager, service, *, enabled=True):
    judge = JudgmentClient("test-key", api_url="https://judge.test", model="test-model",
                           transport=httpx.MockTransport(service))
    return RelevanceObserver(ctx, manager, judge, enabled=enabled)


# ---------------------------------------------------------------------------
# Pre-filter
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", [
    "The login test is failing",
    "Can someone REVIEW my PR?",
    "deploy to staging please",
    "CI is red again",
    "what's the priority on this ticket",
    "The deployment crashed after the merged changes",
    "two tests are flaky and bugs keep coming back",
    "I reviewed the tickets, releasing tomorrow",
])
def test_prefilter_accepts_domain_talk(text):
    assert passes_prefilter(text)


@pytest.mark.parametrize("text", [
    "",
    "Anyone up for lunch later?",
    "good morning everyone",
    "what an approach",
    "nice weather",
    "probably fine",
    "nice city",
])
def test_prefilter_rejects_chatter(text):
    assert not passes_prefilter(text)


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

def test_extract_json_object_from_prose():
    text = 'Sure! Here is my answer:\n{"wake": ["qa"], "reason": "needs {testing}"}\nThanks.'
    assert extract_json_object(text) == {"wake": ["qa"], "reason": "needs {testing}"}


def test_extract_json_object_handles_escaped_quotes_and_nesting():
    text = 'x {"wake": ["dev"], "reason": "said \\"fix }\\"", "meta": {"n": 1}} y'
    assert extract_json_object(text) == {"wake": ["dev"], "reason": 'said "fix }"', "meta": {"n": 1}}


def test_extract_json_object_skips_invalid_braces():
    assert extract_json_object('{not json} then {"wake": []}') == {"wake": []}
    assert extract_json_object("no braces here") is None
    assert extract_json_object('{"unterminated": ') is None


def test_parse_verdict():
    verdict = parse_verdict('{"wake": ["dev", "qa"], "reason": "bug report"}')
    assert verdict.wake == ["dev", "qa"]
    assert verdict.reason == "bug report"
    assert parse_verdict('{"reason": "no wake key"}') is None
    assert parse_verdict('{"wake": "dev"}') is None
    assert parse_verdict("I think dev should look") is None


def test_prompt_lists_candidates_with_role_descriptions(ctx):
    candidates = [ctx.roster["qa"], ctx.roster["ops"]]
    prompt = build_observer_prompt("general", "po-bot", "staging is down", candidates, "(no recent messages)")
    assert "- qa (qa-bot): Quality Assurance" in prompt
    assert "- ops (ops-bot): DevOps" in prompt
    assert "dev (dev-bot)" not in prompt
    assert '{"wake"' in prompt


def test_observer_wake_text_allows_doing_nothing():
    text = compose_observer_wake("general", "po-bot", "staging is down", "(no recent messages)")
    assert "#general" in text
    assert "do nothing" in text


# ---------------------------------------------------------------------------
# Judgment client
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_judgment_client_request_shape():
    service = JudgeService(reply_text="hello")
    judge = JudgmentClient("sk-test", api_url="https://judge.test", model="m1", max_tokens=64,
                           transport=httpx.MockTransport(service))

    assert await judge.complete("the prompt") == "hello"

    request, = service.requests
    assert str(request.url) == "https://judge.test/v1/messages"
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body == {"model": "m1", "max_tokens": 64,
                    "messages": [{"role": "user", "content": "the prompt"}]}


@pytest.mark.asyncio
async def test_judgment_client_failures_return_none():
    judge = JudgmentClient("k", api_url="https://judge.test", transport=httpx.MockTransport(JudgeService(status=529)))
    assert await judge.complete("p") is None

    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    judge = JudgmentClient("k", api_url="https://judge.test", transport=httpx.MockTransport(timeout))
    assert await judge.complete("p") is None

    judge = JudgmentClient("k", api_url="https://judge.test",
                           transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
    assert await judge.complete("p") is None


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_no_keywords_means_no_judgment_call(ctx, recording_manager):
    service = JudgeService('{"wake": ["dev"], "reason": "x"}')
    observer = make_observer(ctx, recording_manager, service)
    event = BroadcastEvent(author_id="po", content="Anyone up for lunch later?", channel_id="c1")

    assert await observer.evaluate(event, set()) == []
    assert service.requests == []
    assert observer.judgment_calls == 0
    assert recording_manager.wakes == []


@pytest.mark.asyncio
async def test_already_mention_woken_agent_not_woken_again(ctx, recording_manager):
    service = JudgeService('Looking at this: {"wake": ["dev","qa"], "reason": "test failure"}')
    observer = make_observer(ctx, recording_manager, service)
    pipeline = BroadcastPipeline(MentionDispatcher(ctx, recording_manager), observer)
    event = BroadcastEvent(author_id="po", content="@dev the login test is failing on staging",
                           channel_id="c1", mentions=["dev"])

    await pipeline.process(event)

    assert recording_manager.woken == ["dev", "qa"]
    mention_text = recording_manager.wakes[0][1]
    observer_text = recording_manager.wakes[1][1]
    assert "You were addressed directly" in mention_text
    assert "You were not mentioned directly" in observer_text
    assert len(service.requests) == 1


@pytest.mark.asyncio
async def test_candidates_exclude_author_woken_and_debounced(ctx, recording_manager):
    ctx.debouncer.try_acquire("ops")
    observer = make_observer(ctx, recording_manager, JudgeService())
    event = BroadcastEvent(author_id="po", content="deploy broke", channel_id="c1")

    candidates = [c.id for c in observer.candidates(event, {"dev"})]

    assert candidates == ["cq", "qa"]


@pytest.mark.asyncio
async def test_prompt_only_offers_candidates(ctx, recording_manager):
    service = JudgeService()
    observer = make_observer(ctx, recording_manager, service)
    event = BroadcastEvent(author_id="po", content="deploy broke", channel_id="c1", author_name="po-bot")

    await observer.evaluate(event, {"dev"})

    prompt, = service.prompts
    assert "- qa (qa-bot)" in prompt
    assert "- dev (dev-bot)" not in prompt
    assert "- po (po-bot)" not in prompt
    assert "#general" in prompt


@pytest.mark.asyncio
async def test_verdict_ids_outside_roster_or_author_are_ignored(ctx, recording_manager):
    service = JudgeService('{"wake": ["ghost", "po", "ops", "ops"], "reason": "infra"}')
    observer = make_observer(ctx, recording_manager, service)
    event = BroadcastEvent(author_id="po", content="the deploy pipeline is broken", channel_id="c1")

    assert await observer.evaluate(event, set()) == ["ops"]
    assert recording_manager.woken == ["ops"]


@pytest.mark.asyncio
async def test_unparseable_verdict_wakes_nobody(ctx, recording_manager):
    observer = make_observer(ctx, recording_manager, JudgeService("I would wake qa."))
    event = BroadcastEvent(author_id="po", content="regression in the build", channel_id="c1")
    assert await observer.evaluate(event, set()) == []
    assert recording_manager.wakes == []


@pytest.mark.asyncio
async def test_judgment_failure_wakes_nobody(ctx, recording_manager):
    observer = make_observer(ctx, recording_manager, JudgeService(status=500))
    event = BroadcastEvent(author_id="po", content="regression in the build", channel_id="c1")
    assert await observer.evaluate(event, set()) == []
    assert recording_manager.wakes == []


@pytest.mark.asyncio
async def test_disabled_observer_never_calls(ctx, recording_manager):
    service = JudgeService('{"wake": ["qa"], "reason": "x"}')
    observer = make_observer(ctx, recording_manager, service, enabled=False)
    event = BroadcastEvent(author_id="po", content="the test is failing", channel_id="c1")
    assert await observer.evaluate(event, set()) == []
    assert service.requests == []

    no_key = RelevanceObserver(ctx, recording_manager, None, enabled=True)
    assert not no_key.active
    assert await no_key.evaluate(event, set()) == []


@pytest.mark.asyncio
async def test_empty_context_skips_judgment(ctx, recording_manager):
    service = JudgeService('{"wake": ["qa"], "reason": "x"}')
    observer = make_observer(ctx, recording_manager, service)
    ctx.context_cache.board._transport = httpx.MockTransport(lambda r: httpx.Response(200, json=[]))
    event = BroadcastEvent(author_id="po", content="the test is failing", channel_id="c9")
    assert await observer.evaluate(event, set()) == []
    assert service.requests == []
