"""Detects a target domain (or its bare brand name) in free text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from visibility_check.fingerprint import normalize_domain

EVIDENCE_RADIUS = 50

# Bare brand tokens shorter than this are too ambiguous to match on their own
# ("x.com" -> "x"); the full domain still matches.
MIN_BRAND_LENGTH = 3


@dataclass(frozen=True)
class Match:
    offset: int
    matched_text: str

    @property
    def end(self) -> int:
        return self.offset + len(self.matched_text)


def brand_token(domain: str) -> str:
    """'www.bumble.com' -> 'bumble'"""
    return normalize_domain(domain).split(".", 1)[0]


class DomainMatcher:
    """
    Case-insensitive matcher for a domain and its brand name.

    Matches "bumble.com", "www.bumble.com" or "Bumble", but never "bumblebee":
    both sides of a hit must be a non-alphanumeric character or the text edge.
    """

    def __init__(self, domain: str):
        self.domain = normalize_domain(domain)
        self.brand = brand_token(self.domain)

        alternatives = [r"(?:www\.)?" + re.escape(self.domain)]
        if len(self.brand) >= MIN_BRAND_LENGTH and self.brand != self.domain:
            alternatives.append(re.escape(self.brand))
        self.pattern = re.compile(
            r"(?<![a-z0-9])(?:" + "|".join(alternatives) + r")(?![a-z0-9])",
            re.IGNORECASE,
        )

    def first_match(self, text: str) -> Optional[Match]:
        if not text:
            return None
        m = self.pattern.search(text)
        if not m:
            return None
        return Match(offset=m.start(), matched_text=m.group(0))

    def evidence(self, text: str, match: Match, radius: int = EVIDENCE_RADIUS) -> str:
        start = max(0, match.offset - radius)
        end = min(len(text), match.end + radius)
        return f"...{text[start:end].strip()}..."


def build_matcher(domain: str) -> DomainMatcher:
    return DomainMatcher(domain)
