"""Cache key derivation for visibility requests."""

from __future__ import annotations

from urllib.parse import quote

from visibility_check import config

SEPARATOR = ":"


def normalize_domain(domain: str) -> str:
    domain = (domain or "").strip().lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def fingerprint(keyword: str, domain: str, country: str, language: str,
                prefix: str = config.RESULT_CACHE_PREFIX) -> str:
    """
    Canonical cache key for (keyword, domain, country, language).

    Keyword is trimmed and lower-cased, then percent-encoded so a colon inside
    it cannot collide with the separator. Domain is lower-cased with a leading
    "www." removed, country upper-cased, language lower-cased.
    """
    parts = [
        prefix,
        quote((keyword or "").strip().lower(), safe=" "),
        normalize_domain(domain),
        (country or "").strip().upper(),
        (language or "").strip().lower(),
    ]
    return SEPARATOR.join(parts)


def fingerprint_query(query, prefix: str = config.RESULT_CACHE_PREFIX) -> str:
    return fingerprint(query.keyword, query.domain, query.country, query.language, prefix=prefix)
