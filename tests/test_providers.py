"""Chat-engine adapters with the vendor SDKs mocked out."""

import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from visibility_check.errors import ProviderCancelled, ProviderConfigError, ProviderTimeout
from visibility_check.matcher import build_matcher
from visibility_check.providers.base import (
    StreamingChatAdapter,
    StreamScan,
    Usage,
    build_prompt,
    retry_with_backoff,
)
from visibility_check.providers.claude import ClaudeAdapter
from visibility_check.providers.gemini import GeminiAdapter
from visibility_check.providers.openai_compat import (
    ChatGPTAdapter,
    DeepSeekAdapter,
    GrokAdapter,
    PerplexityAdapter,
)
from visibility_check.providers.registry import PROVIDER_KEYS, build_registry, enabled_providers


def openai_chunk(text=None, usage=None):
    choices = [] if text is None else [SimpleNamespace(delta=SimpleNamespace(content=text))]
    return SimpleNamespace(choices=choices, usage=usage)


class FakeStream:
    def __init__(self, chunks):
        self.chunks = chunks
        self.consumed = 0
        self.closed = False

    def __iter__(self):
        for chunk in self.chunks:
            self.consumed += 1
            yield chunk

    def close(self):
        self.closed = True


@pytest.fixture
def keys(monkeypatch):
    for name in ("OPENAI_API_KEY", "GROK_API_KEY", "XAI_API_KEY", "DEEPSEEK_API_KEY",
                 "PERPLEXITY_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.setenv(name, f"test-{name.lower()}")
    return monkeypatch


class TestBuildPrompt:

    def test_prompt_mentions_query_fields(self, query):
        prompt = build_prompt(query)
        assert '"dating app"' in prompt
        assert "for users in US (language: en)" in prompt
        assert prompt.endswith('Question: What are the best options for "dating app"?')


class TestStreamScan:

    def scan(self, domain="tinder.com", clock=None, cancel=None, deadline=1e12):
        kwargs = {"clock": clock} if clock else {}
        return StreamScan(build_matcher(domain), deadline, cancel=cancel, provider="test", **kwargs)

    def test_early_match_is_kept(self):
        scan = self.scan()
        for chunk in ["Top picks: ", "Tinder, ", "Bumble ", "and tinder.com again"]:
            scan.feed(chunk)
        assert scan.early_match.offset == len("Top picks: ")
        assert scan.text.endswith("tinder.com again")

    def test_match_at_buffer_end_waits_for_more_text(self):
        scan = self.scan("bumble.com")
        scan.feed("Try Bumble")
        assert scan.early_match is None
        scan.feed("bee honey")
        assert scan.final_match() is None

    def test_match_at_end_of_stream(self):
        scan = self.scan()
        scan.feed("Also Tinder")
        assert scan.early_match is None
        assert scan.final_match().offset == 5

    def test_deadline(self):
        now = [0.0]
        scan = self.scan(clock=lambda: now[0], deadline=45.0)
        scan.feed("hello ")
        now[0] = 45.5
        with pytest.raises(ProviderTimeout):
            scan.feed("world")

    def test_cancel(self):
        cancel = threading.Event()
        scan = self.scan(cancel=cancel)
        scan.feed("hello ")
        cancel.set()
        with pytest.raises(ProviderCancelled):
            scan.feed("world")

    def test_text_accumulates_across_many_chunks(self):
        scan = self.scan("hinge.com")
        for _ in range(500):
            scan.feed("ab ")
        scan.feed("tinder.com")
        assert scan.text == "ab " * 500 + "tinder.com"
        assert scan.chunks == 501
        assert scan.final_match() is None

    def test_expire_closes_registered_stream(self):
        scan = self.scan()
        closed = []
        scan.on_expire(lambda: closed.append("response"))
        scan.expire()
        assert closed == ["response"]
        with pytest.raises(ProviderTimeout):
            scan.feed("late chunk")

    def test_closer_registered_after_expiry_runs_at_once(self):
        scan = self.scan()
        scan.expire()
        closed = []
        scan.on_expire(lambda: closed.append(True))
        assert closed == [True]


class StalledAdapter(StreamingChatAdapter):
    """Feeds one chunk, then stalls without sending anything else."""

    key = "stalled"
    model = "stall-1"
    env_keys = ("STALLED_API_KEY",)

    def __init__(self, stall, abort_on_close=False, **kwargs):
        super().__init__(**kwargs)
        self.stall = stall
        self.abort_on_close = abort_on_close
        self.closed = threading.Event()

    def stream(self, api_key, prompt, scan):
        scan.on_expire(self.closed.set)
        scan.feed("Tinder is the most downloaded ")
        if self.closed.wait(self.stall) and self.abort_on_close:
            raise ConnectionError("stream closed")
        return Usage()


class TestStreamDeadline:

    @pytest.fixture(autouse=True)
    def stalled_key(self, monkeypatch):
        monkeypatch.setenv("STALLED_API_KEY", "test-key")

    def test_stall_that_ends_quietly_is_a_timeout(self, query):
        adapter = StalledAdapter(stall=0.5, stream_deadline=0.1)
        with pytest.raises(ProviderTimeout):
            adapter.run(query)

    def test_deadline_closes_a_stalled_read(self, query):
        adapter = StalledAdapter(stall=5.0, abort_on_close=True, stream_deadline=0.1)
        started = time.monotonic()
        with pytest.raises(ProviderTimeout):
            adapter.run(query)
        assert adapter.closed.is_set()
        assert time.monotonic() - started < 2

    def test_within_deadline(self, query):
        result = StalledAdapter(stall=0, stream_deadline=5.0).run(query)
        assert result.mentioned is True
        assert result.position == 0


class TestOpenAICompatible:

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_streams_and_prices(self, mock_openai, keys, query):
        stream = FakeStream([
            openai_chunk("Popular choices include "),
            openai_chunk("Tinder, Bumble "),
            openai_chunk("and Hinge."),
            openai_chunk(usage=SimpleNamespace(prompt_tokens=100, completion_tokens=200, total_tokens=300)),
        ])
        mock_openai.return_value.chat.completions.create.return_value = stream

        result = ChatGPTAdapter().run(query)

        assert result.mentioned is True
        assert result.position == len("Popular choices include ")
        assert result.raw_text == "Popular choices include Tinder, Bumble and Hinge."
        assert "Tinder" in result.snippet
        assert result.tokens_used == 300
        assert result.cost_usd == pytest.approx(100 * 0.15 / 1e6 + 200 * 0.60 / 1e6)
        # drained to the end for usage
        assert stream.consumed == 4
        assert stream.closed

        kwargs = mock_openai.return_value.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}
        assert kwargs["max_tokens"] == 1000
        assert mock_openai.call_args.kwargs["base_url"] is None

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_not_mentioned(self, mock_openai, keys, query):
        mock_openai.return_value.chat.completions.create.return_value = FakeStream([openai_chunk("Try Hinge.")])
        result = DeepSeekAdapter().run(query)
        assert result.mentioned is False
        assert result.position is None
        assert result.snippet is None
        assert result.cost_usd == 0.0

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_missing_key_fails_before_network(self, mock_openai, monkeypatch, query):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ProviderConfigError, match="OPENAI_API_KEY"):
            ChatGPTAdapter().run(query)
        mock_openai.assert_not_called()

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_grok_base_url_and_key_fallback(self, mock_openai, monkeypatch, query):
        monkeypatch.delenv("GROK_API_KEY", raising=False)
        monkeypatch.setenv("XAI_API_KEY", "xai-key")
        mock_openai.return_value.chat.completions.create.return_value = FakeStream([openai_chunk("tinder.com")])
        GrokAdapter().run(query)
        assert mock_openai.call_args.kwargs["base_url"] == "https://api.x.ai/v1"
        assert mock_openai.call_args.kwargs["api_key"] == "xai-key"
        assert mock_openai.return_value.chat.completions.create.call_args.kwargs["model"] == "grok-3"

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_perplexity_flat_price(self, mock_openai, keys, query):
        mock_openai.return_value.chat.completions.create.return_value = FakeStream([openai_chunk("Tinder")])
        result = PerplexityAdapter().run(query)
        kwargs = mock_openai.return_value.chat.completions.create.call_args.kwargs
        assert "stream_options" not in kwargs
        assert kwargs["model"] == "sonar"
        assert result.cost_usd == 0.005

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_stream_deadline(self, mock_openai, keys, query):
        mock_openai.return_value.chat.completions.create.return_value = FakeStream(
            [openai_chunk("slow "), openai_chunk("answer")]
        )
        adapter = ChatGPTAdapter(stream_deadline=-1)
        with pytest.raises(ProviderTimeout):
            adapter.run(query)

    @patch("visibility_check.providers.openai_compat.OpenAI")
    def test_cancelled(self, mock_openai, keys, query):
        stream = FakeStream([openai_chunk("a"), openai_chunk("b")])
        mock_openai.return_value.chat.completions.create.return_value = stream
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ProviderCancelled):
            ChatGPTAdapter().run(query, cancel)
        assert stream.closed


class TestGemini:

    class Chunk:
        def __init__(self, text):
            self._text = text

        @property
        def text(self):
            if self._text is None:
                raise ValueError("no text part")
            return self._text

    class Response:
        def __init__(self, chunks, usage):
            self.chunks = chunks
            self.usage_metadata = usage

        def __iter__(self):
            return iter(self.chunks)

    @patch("visibility_check.providers.gemini.genai")
    def test_streams_and_prices(self, mock_genai, keys, query):
        usage = SimpleNamespace(prompt_token_count=1000, candidates_token_count=2000, total_token_count=3000)
        mock_genai.GenerativeModel.return_value.generate_content.return_value = self.Response(
            [self.Chunk("Bumble and "), self.Chunk(None), self.Chunk("Tinder are popular.")], usage
        )

        result = GeminiAdapter().run(query)

        mock_genai.configure.assert_called_once_with(api_key="test-gemini_api_key")
        assert mock_genai.GenerativeModel.call_args.args[0] == "gemini-2.0-flash-exp"
        call = mock_genai.GenerativeModel.return_value.generate_content.call_args
        assert call.kwargs["stream"] is True
        assert call.kwargs["request_options"] == {"timeout": 50.0}
        assert result.mentioned is True
        assert result.position == len("Bumble and ")
        assert result.tokens_used == 3000
        assert result.cost_usd == pytest.approx(1000 * 0.075 / 1e6 + 2000 * 0.30 / 1e6)

    @patch("visibility_check.providers.gemini.genai")
    def test_google_api_key_fallback(self, mock_genai, monkeypatch, query):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        mock_genai.GenerativeModel.return_value.generate_content.return_value = self.Response([], None)
        result = GeminiAdapter().run(query)
        mock_genai.configure.assert_called_once_with(api_key="g-key")
        assert result.mentioned is False
        assert result.tokens_used is None


class TestClaude:

    @patch("visibility_check.providers.claude.anthropic")
    def test_streams_and_prices(self, mock_anthropic, keys, query):
        stream = MagicMock()
        stream.text_stream = iter(["Consider ", "tinder.com", " or Hinge."])
        stream.get_final_message.return_value = SimpleNamespace(
            usage=SimpleNamespace(input_tokens=100, output_tokens=300)
        )
        client = mock_anthropic.Anthropic.return_value
        client.messages.stream.return_value.__enter__.return_value = stream

        result = ClaudeAdapter().run(query)

        assert mock_anthropic.Anthropic.call_args.kwargs["timeout"] == 50.0
        kwargs = client.messages.stream.call_args.kwargs
        assert kwargs["model"] == "claude-3-7-sonnet-20250219"
        assert kwargs["max_tokens"] == 1000
        assert result.mentioned is True
        assert result.position == len("Consider ")
        assert result.tokens_used == 400
        assert result.cost_usd == pytest.approx(100 * 3 / 1e6 + 300 * 15 / 1e6)

    @patch("visibility_check.providers.claude.anthropic")
    def test_missing_key(self, mock_anthropic, monkeypatch, query):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ProviderConfigError):
            ClaudeAdapter().run(query)
        mock_anthropic.Anthropic.assert_not_called()


class TestRetryWithBackoff:

    def test_retries_transient_errors(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("503 Service Unavailable")
            return "ok"

        assert retry_with_backoff(flaky, max_retries=1, delay=2, sleep=sleeps.append) == "ok"
        assert len(calls) == 2
        assert 2 <= sleeps[0] <= 3

    def test_rate_limit_waits_longer(self):
        sleeps = []

        def limited():
            raise RuntimeError("Error code: 429 - rate limit")

        with pytest.raises(RuntimeError):
            retry_with_backoff(limited, max_retries=1, delay=2, sleep=sleeps.append)
        assert sleeps[0] >= 8

    def test_final_error_propagates(self):
        def broken():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            retry_with_backoff(broken, max_retries=2, delay=0, sleep=lambda s: None)

    @pytest.mark.parametrize("error", [
        ProviderConfigError("no key"),
        ProviderTimeout("deadline"),
        ProviderCancelled("cancelled"),
    ])
    def test_not_retried(self, error):
        calls = []

        def fail():
            calls.append(1)
            raise error

        with pytest.raises(type(error)):
            retry_with_backoff(fail, max_retries=3, delay=0, sleep=lambda s: None)
        assert len(calls) == 1

    def test_no_retry_after_cancel(self):
        cancel = threading.Event()
        cancel.set()
        calls = []

        def fail():
            calls.append(1)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            retry_with_backoff(fail, max_retries=3, delay=0, cancel=cancel, sleep=lambda s: None)
        assert len(calls) == 1


class TestRegistry:

    def test_fixed_order(self):
        registry = build_registry()
        assert tuple(adapter.key for adapter in registry) == PROVIDER_KEYS
        assert [adapter.model for adapter in registry] == [
            "gpt-4o-mini", "grok-3", "deepseek-chat", "sonar",
            "gemini-2.0-flash-exp", "claude-3-7-sonnet-20250219", "serpapi-ai-overview",
        ]

    def test_disabled_providers_are_skipped(self):
        enabled = {key: True for key in PROVIDER_KEYS}
        enabled["grok"] = False
        selected = enabled_providers(build_registry(), enabled)
        assert [a.key for a in selected] == [k for k in PROVIDER_KEYS if k != "grok"]

    def test_shared_serp_cache(self):
        from visibility_check.providers.google_search import SerpApiCache

        cache = SerpApiCache()
        assert build_registry(serp_cache=cache)[-1].serp_cache is cache
