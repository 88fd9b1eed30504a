"""
Google search-results engine via SerpAPI.

One SerpAPI query per (keyword, country, language) feeds two checks: the AI
Overview block and the organic ranking. Both read the same payload through a
short-lived SerpApiCache, so a run pays for at most one request.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from serpapi import GoogleSearch

from visibility_check import config
from visibility_check.errors import ProviderCancelled, ProviderError, UpstreamResponseError
from visibility_check.fingerprint import normalize_domain
from visibility_check.matcher import build_matcher
from visibility_check.models import ProviderRunResult, Query
from visibility_check.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

ESTIMATED_COST_PER_REQUEST = 0.01  # USD
ORGANIC_DEPTH = 10
OVERVIEW_HEADER = "=== AI Overview ==="


def search_serpapi(params: dict, timeout: float) -> dict:
    """Run one SerpAPI google search and return the decoded payload."""
    search = GoogleSearch(params)
    search.timeout = timeout
    try:
        return search.get_dict()
    except requests.RequestException as e:
        raise ProviderError(f"SerpAPI request failed: {e}") from e


@dataclass
class SerpFetch:
    payload: dict
    cached: bool
    latency_ms: int = 0


class SerpApiCache:
    """
    In-process TTL cache of raw SerpAPI payloads.

    Key is "keyword|country|language" lower-cased. Expired entries are swept on
    every write. Fetches happen outside the lock; two concurrent misses for the
    same key may both go upstream, which only costs an extra request.
    """

    def __init__(
        self,
        ttl_seconds: float = config.SERPAPI_CACHE_TTL,
        fetcher: Callable[[dict, float], dict] = search_serpapi,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.fetcher = fetcher
        self._clock = clock
        self._entries: dict[str, tuple[float, dict]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(keyword: str, country: str, language: str) -> str:
        return f"{keyword}|{country}|{language}".lower()

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return payload

    def put(self, key: str, payload: dict) -> None:
        with self._lock:
            now = self._clock()
            for stale in [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]:
                del self._entries[stale]
            self._entries[key] = (now + self.ttl_seconds, payload)

    def fetch(self, query: Query, api_key: str, timeout: float) -> SerpFetch:
        key = self.key(query.keyword, query.country, query.language)
        payload = self.get(key)
        if payload is not None:
            logger.debug(f"SerpAPI cache hit for {key}")
            return SerpFetch(payload=payload, cached=True)

        params = {
            "engine": "google",
            "q": query.keyword,
            "api_key": api_key,
            "udm": 14,
            "hl": query.language,
            "gl": query.country.lower(),
            "num": ORGANIC_DEPTH,
        }
        started = time.monotonic()
        payload = self.fetcher(params, timeout)
        latency_ms = int((time.monotonic() - started) * 1000)

        if not isinstance(payload, dict):
            raise UpstreamResponseError("SerpAPI returned a non-object payload")
        if payload.get("error"):
            raise UpstreamResponseError(f"SerpAPI error: {payload['error']}")

        self.put(key, payload)
        return SerpFetch(payload=payload, cached=False, latency_ms=latency_ms)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def hostname(link: Optional[str]) -> Optional[str]:
    if not link:
        return None
    host = urlparse(link).hostname
    if not host:
        return None
    return normalize_domain(host)


def host_matches(link: Optional[str], domain: str) -> bool:
    host = hostname(link)
    if host is None:
        return False
    domain = normalize_domain(domain)
    return host == domain or host.endswith("." + domain)


def overview_text(payload: dict) -> str:
    """Flatten `ai_snippets` / `ai_overview` into one block of text."""
    blocks = []
    for snippet in payload.get("ai_snippets") or []:
        parts = []
        if isinstance(snippet.get("answer"), str):
            parts.append(snippet["answer"])
        follow_ups = snippet.get("follow_up_questions") or []
        if follow_ups:
            parts.append(". ".join(follow_ups))
        cited = "; ".join(
            " – ".join(str(v) for v in (s.get("title"), s.get("source"), s.get("link")) if v)
            for s in snippet.get("cited_sources") or []
        )
        if cited:
            parts.append(cited)
        if parts:
            blocks.append("\n".join(parts))

    overview = payload.get("ai_overview") or {}
    if isinstance(overview.get("text"), str):
        blocks.append(overview["text"])
    for block in overview.get("text_blocks") or []:
        if isinstance(block.get("snippet"), str):
            blocks.append(block["snippet"])
    return "\n\n".join(b for b in blocks if b)


def cited_links(payload: dict) -> list[dict]:
    links = []
    for snippet in payload.get("ai_snippets") or []:
        links.extend(snippet.get("cited_sources") or [])
    overview = payload.get("ai_overview") or {}
    for ref in (overview.get("references") or []) + (overview.get("links") or []):
        links.append({"title": ref.get("title"), "link": ref.get("link") or ref.get("url")})
    return links


@dataclass
class OverviewCheck:
    text: str
    mentioned: bool = False
    offset: Optional[int] = None  # within `text`
    snippet: Optional[str] = None


@dataclass
class OrganicCheck:
    rank: Optional[int] = None  # 1-based; None = not in the top results
    title: Optional[str] = None
    top_results: list[dict] = field(default_factory=list)


def check_ai_overview(payload: dict, domain: str) -> OverviewCheck:
    text = overview_text(payload)
    matcher = build_matcher(domain)
    match = matcher.first_match(text)
    if match:
        return OverviewCheck(
            text=text,
            mentioned=True,
            offset=match.offset,
            snippet=f"AI Overview: {matcher.evidence(text, match)}",
        )

    for source in cited_links(payload):
        if host_matches(source.get("link"), domain):
            label = source.get("title") or source.get("link") or domain
            return OverviewCheck(text=text, mentioned=True, snippet=f"AI Overview cited source: {label}")
    return OverviewCheck(text=text)


def check_organic(payload: dict, domain: str, depth: int = ORGANIC_DEPTH) -> OrganicCheck:
    results = (payload.get("organic_results") or [])[:depth]
    for index, result in enumerate(results):
        if host_matches(result.get("link"), domain):
            return OrganicCheck(rank=index + 1, title=result.get("title") or result.get("link"), top_results=results)
    return OrganicCheck(top_results=results)


def render_raw_text(overview: OverviewCheck, organic: OrganicCheck) -> str:
    lines = []
    for index, result in enumerate(organic.top_results):
        host = hostname(result.get("link")) or "N/A"
        marker = " <- YOUR DOMAIN" if organic.rank == index + 1 else ""
        lines.append(f"#{index + 1}: {result.get('title') or 'No title'} ({host}){marker}")
    return "\n".join([
        OVERVIEW_HEADER,
        overview.text or "No AI Overview available",
        "",
        f"=== Top {ORGANIC_DEPTH} Organic Results ===",
        "\n".join(lines) if lines else "No organic results found",
    ])


class GoogleAiOverviewAdapter(ProviderAdapter):
    key = "google_ai_overview"
    model = "serpapi-ai-overview"
    env_keys = ("SERPAPI_API_KEY",)

    def __init__(self, serp_cache: Optional[SerpApiCache] = None, **kwargs):
        super().__init__(**kwargs)
        self.serp_cache = serp_cache if serp_cache is not None else SerpApiCache()

    def run(self, query: Query, cancel: Optional[threading.Event] = None) -> ProviderRunResult:
        api_key = self.api_key()
        if cancel is not None and cancel.is_set():
            raise ProviderCancelled(f"{self.key}: cancelled")

        started = time.monotonic()
        overview_fetch = self.serp_cache.fetch(query, api_key, self.transport_timeout)
        overview = check_ai_overview(overview_fetch.payload, query.domain)

        organic_fetch = self.serp_cache.fetch(query, api_key, self.transport_timeout)
        organic = check_organic(organic_fetch.payload, query.domain)
        latency_ms = int((time.monotonic() - started) * 1000)

        raw_text = render_raw_text(overview, organic)
        mentioned = overview.mentioned
        snippet = overview.snippet
        position = None
        if overview.offset is not None:
            position = len(OVERVIEW_HEADER) + 1 + overview.offset

        if organic.rank is not None:
            if mentioned:
                snippet = f"{snippet} | Also in organic #{organic.rank}: {organic.title}"
            else:
                mentioned = True
                snippet = f"Organic result #{organic.rank}: {organic.title}"

        uncached = not (overview_fetch.cached and organic_fetch.cached)
        return ProviderRunResult(
            mentioned=mentioned,
            position=position,
            snippet=snippet,
            raw_text=raw_text,
            latency_ms=latency_ms,
            cost_usd=ESTIMATED_COST_PER_REQUEST if uncached else 0.0,
            organic_rank=organic.rank,
        )
