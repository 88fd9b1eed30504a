"""Data model: queries, runs, per-provider outcomes and derived scores."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from visibility_check.errors import QueryValidationError

# ProviderOutcome.status
STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_TIMEOUT = "timeout"
OUTCOME_STATUSES = (STATUS_OK, STATUS_ERROR, STATUS_TIMEOUT)

# Run lifecycle
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_PARTIALLY_FAILED = "partially-failed"
# The run itself broke (e.g. the store rejected a write); some outcomes may be missing
RUN_FAILED = "failed"

KEYWORD_MAX_LENGTH = 120

_DOMAIN_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)(?:\.[a-z0-9-]{1,63})+$")
_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
_LANGUAGE_RE = re.compile(r"^[a-zA-Z]{2,3}(?:-[a-zA-Z0-9]{2,8})*$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return f"run_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class Query:
    """A validated visibility request. Build it with `Query.create`."""

    keyword: str
    domain: str
    country: str
    language: str = "en"
    email: Optional[str] = None

    @classmethod
    def create(
        cls,
        keyword: str,
        domain: str,
        country: str,
        language: Optional[str] = "en",
        email: Optional[str] = None,
    ) -> "Query":
        issues: dict[str, str] = {}

        keyword = (keyword or "").strip()
        if not keyword:
            issues["keyword"] = "Keyword is required"
        elif len(keyword) > KEYWORD_MAX_LENGTH:
            issues["keyword"] = f"Keyword must be at most {KEYWORD_MAX_LENGTH} characters"

        domain = (domain or "").strip().lower()
        if not _DOMAIN_RE.match(domain):
            issues["domain"] = "Enter a domain like example.com (no http://, no path)"

        country = (country or "").strip().upper()
        if not _COUNTRY_RE.match(country):
            issues["country"] = "Use ISO-2 country code"

        language = (language or "en").strip()
        if not _LANGUAGE_RE.match(language):
            issues["language"] = "Use a valid BCP-47 language tag"

        email = (email or "").strip() or None
        if email is not None and not _EMAIL_RE.match(email):
            issues["email"] = "Invalid email address"

        if issues:
            raise QueryValidationError(issues)

        return cls(keyword=keyword, domain=domain, country=country, language=language, email=email)


@dataclass(frozen=True)
class Run:
    id: str
    keyword: str
    domain: str
    country: str
    language: str
    created_at: str
    providers_expected: int
    email: Optional[str] = None

    @property
    def query(self) -> Query:
        return Query(
            keyword=self.keyword,
            domain=self.domain,
            country=self.country,
            language=self.language,
            email=self.email,
        )


@dataclass
class ProviderRunResult:
    """What an adapter hands back on success."""

    mentioned: bool
    raw_text: str
    position: Optional[int] = None
    snippet: Optional[str] = None
    latency_ms: Optional[int] = None
    cost_usd: Optional[float] = None
    tokens_used: Optional[int] = None
    organic_rank: Optional[int] = None  # search engine only; None = not in top 10


@dataclass(frozen=True)
class ProviderOutcome:
    """Terminal result of one provider within one run."""

    provider: str
    model: Optional[str]
    status: str
    mentioned: bool
    raw_text: str
    first_index: Optional[int] = None
    evidence: Optional[str] = None
    latency_ms: Optional[int] = None
    cost_usd: Optional[float] = None
    tokens_used: Optional[int] = None
    organic_rank: Optional[int] = None

    def __post_init__(self):
        if self.status not in OUTCOME_STATUSES:
            raise ValueError(f"Unknown outcome status: {self.status}")
        if self.mentioned and self.status != STATUS_OK:
            raise ValueError("mentioned=True requires status 'ok'")

    @property
    def settled_ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def counts_as_mention(self) -> bool:
        return self.status == STATUS_OK and self.mentioned

    @classmethod
    def from_result(cls, provider: str, model: Optional[str], result: ProviderRunResult) -> "ProviderOutcome":
        return cls(
            provider=provider,
            model=model,
            status=STATUS_OK,
            mentioned=result.mentioned,
            raw_text=result.raw_text,
            first_index=result.position if result.mentioned else None,
            evidence=result.snippet,
            latency_ms=result.latency_ms,
            cost_usd=result.cost_usd,
            tokens_used=result.tokens_used,
            organic_rank=result.organic_rank,
        )

    @classmethod
    def failure(
        cls,
        provider: str,
        model: Optional[str],
        error: BaseException,
        status: str = STATUS_ERROR,
        latency_ms: Optional[int] = None,
    ) -> "ProviderOutcome":
        return cls(
            provider=provider,
            model=model,
            status=status,
            mentioned=False,
            raw_text=str(error) or error.__class__.__name__,
            latency_ms=latency_ms,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderOutcome":
        return cls(
            provider=data["provider"],
            model=data.get("model"),
            status=data["status"],
            mentioned=bool(data.get("mentioned")),
            raw_text=data.get("raw_text") or "",
            first_index=data.get("first_index"),
            evidence=data.get("evidence"),
            latency_ms=data.get("latency_ms"),
            cost_usd=data.get("cost_usd"),
            tokens_used=data.get("tokens_used"),
            organic_rank=data.get("organic_rank"),
        )


@dataclass
class ScoreSnapshot:
    """Derived from whatever outcomes exist right now. Never persisted."""

    mention_count: int
    weighted_score_percent: float
    providers_settled: int
    providers_total: int
    competitors_per_provider: dict[str, list[str]] = field(default_factory=dict)
    brand_rank: dict[str, Optional[int]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)
