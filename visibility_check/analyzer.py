"""
Competitor / ranking analysis.

Given a provider answer and the offset of the target's first mention, estimate
how many other brands the engine surfaced before the target in the same
section. This is heuristic pattern matching, not NLP: false positives and
negatives are expected.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from visibility_check.matcher import brand_token

# Fallback scan window when the answer has no "##" section headers
SCOPE_FALLBACK_CHARS = 1200

MAX_BRAND_WORDS = 4
MAX_BRAND_LENGTH = 40
CONTEXT_RADIUS = 40

_SECTION_HEADER_RE = re.compile(r"^[ \t]{0,3}#{2,6}[^\n]*$", re.MULTILINE)

# 1. Explicit domains ("name.tld"), highest confidence
_DOMAIN_RE = re.compile(
    r"(?<![\w.@-])((?:www\.)?[a-z0-9-]+\.(?:com|de|net|org|co|io|app|ai|ch|fr|it|nl|uk|eu|dev|tech)"
    r"(?:\.[a-z]{2})?)(?![\w-])",
    re.IGNORECASE,
)

# 2. List items / emphasis: "**Name**:", "**Name:**", "1. Name:", "2) **Name** - ..."
_EMPHASIS_RE = re.compile(r"\*\*([^*\n:]{2,60}?)(?::\*\*|\*\*[ \t]*(?::|[-–—][ \t]))")
_NUMBERED_RE = re.compile(
    r"^[ \t]*\d{1,2}[.)][ \t]+(?:\*\*)?([A-Z][^\n:*|]{1,60}?)(?:\*\*)?[ \t]*(?::|[-–—][ \t])",
    re.MULTILINE,
)

# 3. Markdown table rows: first cell of "| Name | ... |"
_TABLE_CELL_RE = re.compile(r"^[ \t]*\|[ \t]*(?:\*\*)?([^|\n*]{2,40}?)(?:\*\*)?[ \t]*\|", re.MULTILINE)

# Words that show up capitalised in lists and tables but are not brands
COMMON_WORDS = frozenset([
    'the', 'and', 'for', 'with', 'from', 'this', 'that', 'they', 'have', 'will', 'can', 'how', 'what',
    'when', 'where', 'which', 'why', 'who', 'your', 'you', 'our', 'best', 'top', 'good', 'great', 'here',
    'some', 'many', 'most', 'also', 'other', 'more', 'very', 'just', 'only', 'even', 'such', 'like',
    'well', 'both', 'each', 'find', 'first', 'get', 'give', 'look', 'make', 'need', 'new', 'now',
    'over', 'see', 'take', 'time', 'want', 'way', 'work', 'year', 'know', 'about', 'after', 'before',
    'between', 'different', 'example', 'following', 'however', 'important', 'including', 'local',
    'looking', 'major', 'note', 'overview', 'summary', 'conclusion', 'introduction', 'tips', 'tip',
    'pros', 'cons', 'price', 'pricing', 'cost', 'costs', 'free', 'paid', 'features', 'feature',
    'name', 'rank', 'rating', 'ratings', 'reviews', 'review', 'users', 'user', 'audience', 'best for',
    'key features', 'option', 'options', 'alternative', 'alternatives', 'recommendation',
    'recommendations', 'platform', 'platforms', 'app', 'apps', 'service', 'services', 'site', 'sites',
    'website', 'websites', 'company', 'companies', 'tool', 'tools', 'brand', 'brands', 'provider',
    'providers', 'category', 'type', 'description', 'notes', 'details', 'safety', 'security',
    'privacy', 'support', 'availability', 'country', 'countries', 'language', 'location', 'bonus',
    'considerations', 'final thoughts', 'popular', 'popularity', 'quality', 'ease of use', 'value',
    'why it stands out', 'strengths', 'weaknesses', 'focus', 'target', 'target audience', 'yes', 'no',
    'step', 'steps', 'budget', 'premium', 'basic', 'plan', 'plans', 'subscription', 'trial',
    'monthly', 'annual', 'global', 'international', 'online', 'mobile', 'desktop', 'web',
])

# Real brands that are also everyday words; accepted only in brand-like context
AMBIGUOUS_BRANDS = frozenset([
    'match', 'wish', 'apple', 'amazon', 'target', 'indeed', 'monster', 'shine', 'hinge', 'her',
    'notion', 'zoom', 'slack', 'square', 'stripe', 'bumble', 'tinder', 'meetic', 'plenty',
    'shopify', 'ring', 'nest', 'dice', 'lever', 'workable', 'remote', 'oyster', 'deel', 'arc',
])

BRAND_INDICATORS = (".com", " app", "app ", "platform", "site", "website", "service", "available on",
                    "download", "sign up", "subscription")

_VERB_LIKE_RE = re.compile(
    r"\b(?:to|will|can|could|would|should|may|might|must|you|we|they|i|don't|doesn't|that)\s+$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TextScope:
    start: int
    end: int


@dataclass(frozen=True)
class Candidate:
    offset: int
    name: str
    source: str  # "domain" | "list" | "table"


@dataclass
class RankingAnalysis:
    rank: int
    competitors: list[str] = field(default_factory=list)


def section_scope(text: str, target_offset: int) -> TextScope:
    """Text since the last "##" header before the target, else the last ~1200 chars."""
    target_offset = max(0, min(target_offset, len(text)))
    headers = list(_SECTION_HEADER_RE.finditer(text, 0, target_offset))
    if headers:
        return TextScope(headers[-1].end(), target_offset)
    return TextScope(max(0, target_offset - SCOPE_FALLBACK_CHARS), target_offset)


def brand_key(name: str) -> str:
    """Dedup key: 'Coffee Meets Bagel' and 'coffeemeetsbagel.com' collapse together."""
    name = name.strip().lower()
    if "." in name and " " not in name:
        name = brand_token(name)
    return re.sub(r"[^a-z0-9]", "", name)


def _clean_name(raw: str) -> str:
    name = raw.strip().strip("*_`").strip()
    return name.rstrip(" .,;:-–—").strip()


def _looks_like_brand(name: str) -> bool:
    if not name or len(name) > MAX_BRAND_LENGTH or not re.search(r"[A-Za-z]", name):
        return False
    lowered = name.lower()
    if lowered in COMMON_WORDS:
        return False
    words = lowered.split()
    if len(words) > MAX_BRAND_WORDS:
        return False
    return not all(w.strip("()&+,.") in COMMON_WORDS for w in words)


def _brand_context_ok(text: str, start: int, end: int) -> bool:
    """Gate for ambiguous words: brand-indicator nearby, or not used like a verb."""
    window = text[max(0, start - CONTEXT_RADIUS):end + CONTEXT_RADIUS].lower()
    if any(indicator in window for indicator in BRAND_INDICATORS):
        return True
    return not _VERB_LIKE_RE.search(text[max(0, start - 20):start])


class BrandExtractor(ABC):
    """Pulls brand-like names out of a scoped slice of text."""

    @abstractmethod
    def extract(self, text: str, scope: TextScope) -> list[str]:
        """Return brand names found within scope, in order of appearance (duplicates allowed)."""


class PatternBrandExtractor(BrandExtractor):
    """Regex cascade: explicit domains, list/emphasis items, table cells."""

    def extract(self, text: str, scope: TextScope) -> list[str]:
        return [c.name for c in self.candidates(text, scope)]

    def candidates(self, text: str, scope: TextScope) -> list[Candidate]:
        found: list[Candidate] = []

        # 1. Explicit name.tld mentions
        for m in _DOMAIN_RE.finditer(text, scope.start, scope.end):
            domain = m.group(1).lower()
            if domain.startswith("www."):
                domain = domain[4:]
            if domain.startswith(("example.", "test.")):
                continue
            found.append(Candidate(m.start(1), domain, "domain"))

        # 2. "**Name**:" and "N. Name:" list items
        for regex in (_EMPHASIS_RE, _NUMBERED_RE):
            for m in regex.finditer(text, scope.start, scope.end):
                found.append(Candidate(m.start(1), _clean_name(m.group(1)), "list"))

        # 3. "| Name |" table cells
        for m in _TABLE_CELL_RE.finditer(text, scope.start, scope.end):
            cell = _clean_name(m.group(1))
            if set(cell) <= set("-: "):
                continue
            found.append(Candidate(m.start(1), cell, "table"))

        accepted = []
        for candidate in sorted(found, key=lambda c: c.offset):
            if candidate.source != "domain":
                if not _looks_like_brand(candidate.name):
                    continue
                if candidate.name.lower() in AMBIGUOUS_BRANDS and not _brand_context_ok(
                    text, candidate.offset, candidate.offset + len(candidate.name)
                ):
                    continue
            accepted.append(candidate)
        return accepted


class CompetitorAnalyzer:
    """Ranks the target among brands mentioned before it in the same section."""

    def __init__(self, extractor: Optional[BrandExtractor] = None):
        self.extractor = extractor or PatternBrandExtractor()

    def analyze(self, text: str, target_offset: int, target_domain: Optional[str] = None) -> RankingAnalysis:
        scope = section_scope(text or "", target_offset)
        excluded = set()
        if target_domain:
            excluded = {brand_key(target_domain), brand_key(brand_token(target_domain))}

        competitors: list[str] = []
        seen: set[str] = set()
        for name in self.extractor.extract(text or "", scope):
            key = brand_key(name)
            if not key or key in seen or key in excluded:
                continue
            seen.add(key)
            competitors.append(name)

        return RankingAnalysis(rank=len(competitors) + 1, competitors=competitors)


def analyze(text: str, target_offset: int, target_domain: Optional[str] = None) -> RankingAnalysis:
    return CompetitorAnalyzer().analyze(text, target_offset, target_domain)
