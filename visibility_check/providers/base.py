"""
Shared plumbing for provider adapters.

Every adapter turns a Query into a ProviderRunResult or raises. Adapters do NOT
catch their own errors: the orchestrator converts any exception into an error
outcome so one failing engine never aborts the batch.
"""

from __future__ import annotations

import logging
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from visibility_check import config
from visibility_check.errors import (
    ProviderCancelled,
    ProviderConfigError,
    ProviderTimeout,
)
from visibility_check.matcher import DomainMatcher, Match, build_matcher
from visibility_check.models import ProviderRunResult, Query

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant that provides comprehensive answers to user queries. "
    "Include relevant websites, companies, or services when appropriate."
)


def build_prompt(query: Query) -> str:
    """The single natural-language prompt sent to every chat engine."""
    return (
        f'You are a helpful assistant answering questions about "{query.keyword}" '
        f"for users in {query.country} (language: {query.language}).\n"
        "Provide a comprehensive answer that includes relevant companies, websites, "
        "and services when appropriate.\n\n"
        f'Question: What are the best options for "{query.keyword}"?'
    )


# ============================================================================
# PRICING
# ============================================================================

@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: Optional[int] = None

    @property
    def tokens(self) -> Optional[int]:
        if self.total_tokens is not None:
            return self.total_tokens
        if self.input_tokens or self.output_tokens:
            return self.input_tokens + self.output_tokens
        return None


@dataclass(frozen=True)
class TokenPricing:
    """USD per 1M input / output tokens."""
    input_per_million: float
    output_per_million: float

    def cost(self, usage: Usage) -> float:
        return (usage.input_tokens * self.input_per_million / 1_000_000
                + usage.output_tokens * self.output_per_million / 1_000_000)


@dataclass(frozen=True)
class RequestPricing:
    """Flat USD per request."""
    per_request: float

    def cost(self, usage: Usage) -> float:
        return self.per_request


# ============================================================================
# ADAPTERS
# ============================================================================

class ProviderAdapter(ABC):
    key: str = ""
    model: Optional[str] = None
    env_keys: tuple[str, ...] = ()

    def __init__(
        self,
        transport_timeout: float = config.PROVIDER_TRANSPORT_TIMEOUT,
        stream_deadline: float = config.PROVIDER_STREAM_DEADLINE,
    ):
        self.transport_timeout = transport_timeout
        self.stream_deadline = stream_deadline

    def api_key(self) -> str:
        for name in self.env_keys:
            value = os.getenv(name)
            if value:
                return value
        raise ProviderConfigError(f"{self.env_keys[0]} is not configured")

    @abstractmethod
    def run(self, query: Query, cancel: Optional[threading.Event] = None) -> ProviderRunResult:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.key} ({self.model})>"


class StreamScan:
    """
    Accumulates streamed text and remembers the first domain match.

    The match is recorded as soon as it appears but the stream is still drained
    to the end: token usage (and therefore cost) only arrives with the final
    chunk, so returning early would lose the accounting.

    The deadline is also enforced when no chunk arrives: `expire()` (fired by a
    timer in StreamingChatAdapter.run) closes whatever the adapter registered
    with `on_expire`, which unblocks a stalled read.
    """

    def __init__(
        self,
        matcher: DomainMatcher,
        deadline: float,
        cancel: Optional[threading.Event] = None,
        provider: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.matcher = matcher
        self.deadline = deadline
        self.cancel = cancel
        self.provider = provider
        self._clock = clock
        self._text = ""
        self.early_match: Optional[Match] = None
        self.chunks = 0
        self.expired = threading.Event()
        self._closers: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def text(self) -> str:
        return self._text

    def on_expire(self, closer: Callable[[], None]) -> None:
        """Register a callable that aborts the underlying stream."""
        with self._lock:
            if not self.expired.is_set():
                self._closers.append(closer)
                return
        self._close(closer)

    def expire(self) -> None:
        with self._lock:
            self.expired.set()
            closers, self._closers = self._closers, []
        if closers:
            logger.warning(f"⏱️  {self.provider}: stream deadline reached, closing stream")
        for closer in closers:
            self._close(closer)

    def _close(self, closer: Callable[[], None]) -> None:
        try:
            closer()
        except Exception as e:
            logger.debug(f"{self.provider}: error while closing stream: {e}")

    def check_deadline(self) -> None:
        if self.expired.is_set() or self._clock() > self.deadline:
            raise ProviderTimeout(f"{self.provider}: stream deadline exceeded")

    def feed(self, chunk: Optional[str]) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ProviderCancelled(f"{self.provider}: cancelled")
        self.check_deadline()
        if not chunk:
            return
        self.chunks += 1
        self._text += chunk

        if self.early_match is None and len(self._text) > len(self.matcher.domain):
            match = self.matcher.first_match(self._text)
            # A hit touching the end of the buffer may still grow ("bumble" -> "bumblebee")
            if match is not None and match.end < len(self._text):
                self.early_match = match
                logger.debug(f"{self.provider}: early match at {match.offset} after {self.chunks} chunk(s)")

    def final_match(self) -> Optional[Match]:
        return self.early_match or self.matcher.first_match(self._text)


class StreamingChatAdapter(ProviderAdapter):
    """Chat engine that streams text; subclasses implement `stream`."""

    pricing = TokenPricing(0.0, 0.0)

    @abstractmethod
    def stream(self, api_key: str, prompt: str, scan: StreamScan) -> Usage:
        """Send the prompt, feed every text delta into scan, return reported usage."""

    def run(self, query: Query, cancel: Optional[threading.Event] = None) -> ProviderRunResult:
        api_key = self.api_key()
        matcher = build_matcher(query.domain)

        started = time.monotonic()
        scan = StreamScan(matcher, started + self.stream_deadline, cancel=cancel, provider=self.key)
        timer = threading.Timer(self.stream_deadline, scan.expire)
        timer.daemon = True
        timer.start()
        try:
            usage = self.stream(api_key, build_prompt(query), scan)
        except (ProviderTimeout, ProviderCancelled):
            raise
        except Exception as e:
            # Reading from a stream closed by expire() surfaces as a transport error
            if scan.expired.is_set():
                raise ProviderTimeout(f"{self.key}: stream deadline exceeded") from e
            raise
        finally:
            timer.cancel()
        # A stream that stalled and then ended without another chunk
        scan.check_deadline()
        latency_ms = int((time.monotonic() - started) * 1000)

        raw_text = scan.text
        match = scan.final_match()
        return ProviderRunResult(
            mentioned=match is not None,
            position=match.offset if match else None,
            snippet=matcher.evidence(raw_text, match) if match else None,
            raw_text=raw_text,
            latency_ms=latency_ms,
            cost_usd=self.pricing.cost(usage),
            tokens_used=usage.tokens,
        )


# ============================================================================
# RETRY
# ============================================================================

NON_RETRYABLE = (ProviderConfigError, ProviderTimeout, ProviderCancelled)


def _is_rate_limit(error: BaseException) -> bool:
    error_str = str(error).lower()
    return "429" in error_str or "rate" in error_str or "exhausted" in error_str or "quota" in error_str


def retry_with_backoff(
    func: Callable[[], ProviderRunResult],
    max_retries: int = config.PROVIDER_MAX_RETRIES,
    delay: float = config.PROVIDER_RETRY_DELAY,
    label: str = "",
    cancel: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProviderRunResult:
    """
    Call func, retrying transient failures with exponential backoff and jitter.

    Only the final attempt's result or error escapes, so a retried provider
    still produces exactly one outcome.
    """
    attempt = 0
    while True:
        try:
            return func()
        except NON_RETRYABLE:
            raise
        except Exception as e:
            if attempt >= max_retries or (cancel is not None and cancel.is_set()):
                raise
            # Longer wait for rate limit errors (429)
            base = delay * 4 if _is_rate_limit(e) else delay
            wait_time = base * (2 ** attempt) + random.uniform(0, 1)
            logger.warning(f"{label} attempt {attempt + 1}/{max_retries + 1} failed: {e}. Retrying in {wait_time:.1f}s...")
            sleep(wait_time)
            attempt += 1
