"""Shared fixtures: scripted provider adapters and in-process stores."""

import threading
import time

import pytest

from visibility_check.cache import MemoryCacheStore, ResultCache
from visibility_check.errors import ProviderConfigError
from visibility_check.matcher import build_matcher
from visibility_check.models import ProviderRunResult, Query
from visibility_check.providers.base import ProviderAdapter
from visibility_check.store import InMemoryRunStore


class FakeAdapter(ProviderAdapter):
    """Adapter that answers with canned text after an optional delay or gate."""

    def __init__(self, key, text="", model=None, delay=0.0, error=None, gate=None, cost=0.001):
        super().__init__()
        self.key = key
        self.model = model or f"{key}-model"
        self.text = text
        self.delay = delay
        self.error = error
        self.gate = gate
        self.cost = cost
        self.calls = 0

    def run(self, query, cancel=None):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.delay:
            deadline = time.monotonic() + self.delay
            while time.monotonic() < deadline:
                if cancel is not None and cancel.is_set():
                    break
                time.sleep(0.01)
        if self.error is not None:
            raise self.error
        matcher = build_matcher(query.domain)
        match = matcher.first_match(self.text)
        return ProviderRunResult(
            mentioned=match is not None,
            raw_text=self.text,
            position=match.offset if match else None,
            snippet=matcher.evidence(self.text, match) if match else None,
            latency_ms=int(self.delay * 1000),
            cost_usd=self.cost,
            tokens_used=42,
        )


class FlakyStore(InMemoryRunStore):
    """In-memory store whose writes fail for one provider, like a locked database."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def append_outcome(self, run_id, outcome):
        if outcome.provider == self.fail_on:
            raise OSError("database is locked")
        super().append_outcome(run_id, outcome)


@pytest.fixture
def query():
    return Query.create("dating app", "tinder.com", "US", "en")


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def result_cache():
    return ResultCache(MemoryCacheStore())


@pytest.fixture
def gate():
    return threading.Event()


@pytest.fixture
def seven_adapters():
    """Full registry of fakes: 4 mention tinder.com, 1 fails, 2 do not mention it."""
    return [
        FakeAdapter("openai", "## Top apps\n1. **Bumble**: women first\n2. **Tinder**: swipe"),
        FakeAdapter("grok", "Try tinder.com or hinge.co"),
        FakeAdapter("deepseek", "Hinge and Bumble are popular."),
        FakeAdapter("perplexity", "Tinder leads the market."),
        FakeAdapter("gemini", error=ProviderConfigError("GEMINI_API_KEY is not configured")),
        FakeAdapter("claude", "Consider OkCupid."),
        FakeAdapter("google_ai_overview", "=== AI Overview ===\nTinder is a dating app."),
    ]
