"""Weighted visibility score and per-provider ranking snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from visibility_check import config
from visibility_check.analyzer import CompetitorAnalyzer
from visibility_check.models import ProviderOutcome, ScoreSnapshot

# Providers whose rank is the literal organic position rather than an estimate
SEARCH_PROVIDERS = frozenset(["google_ai_overview"])


@dataclass(frozen=True)
class Score:
    percent: float
    mention_count: int


def _one_per_provider(outcomes: Iterable[ProviderOutcome]) -> list[ProviderOutcome]:
    seen = set()
    unique = []
    for outcome in outcomes:
        if outcome.provider in seen:
            continue
        seen.add(outcome.provider)
        unique.append(outcome)
    return unique


def score(outcomes: Iterable[ProviderOutcome], weights: Optional[dict[str, float]] = None) -> Score:
    """
    100 x (weight of providers that are ok AND mentioned) / (weight of the whole table).

    Failed or missing providers still count in the denominator, so an
    unreachable engine lowers the achievable score instead of being ignored.

    Rounded to one decimal rather than a whole percent: with seven weights
    several distinct mention sets would otherwise collapse onto the same
    integer. Callers that want an integer can round again.
    """
    weights = config.PROVIDER_WEIGHTS if weights is None else weights
    outcomes = _one_per_provider(outcomes)

    total_weight = sum(weights.values())
    earned = sum(weights.get(o.provider, 0.0) for o in outcomes if o.counts_as_mention)
    mention_count = sum(1 for o in outcomes if o.counts_as_mention)

    percent = round(earned / total_weight * 100, 1) if total_weight > 0 else 0.0
    return Score(percent=min(percent, 100.0), mention_count=mention_count)


def build_snapshot(
    outcomes: Iterable[ProviderOutcome],
    domain: str,
    weights: Optional[dict[str, float]] = None,
    analyzer: Optional[CompetitorAnalyzer] = None,
    providers_total: Optional[int] = None,
) -> ScoreSnapshot:
    """Recompute score, competitors and brand rank from the outcomes present right now."""
    weights = config.PROVIDER_WEIGHTS if weights is None else weights
    analyzer = analyzer or CompetitorAnalyzer()
    outcomes = _one_per_provider(outcomes)
    result = score(outcomes, weights)

    competitors: dict[str, list[str]] = {}
    brand_rank: dict[str, Optional[int]] = {}
    for outcome in outcomes:
        competitors[outcome.provider] = []
        brand_rank[outcome.provider] = None

        if outcome.provider in SEARCH_PROVIDERS:
            # Position in the top 10 organic results; absent means not ranked
            brand_rank[outcome.provider] = outcome.organic_rank if outcome.settled_ok else None
            continue

        if not outcome.counts_as_mention or outcome.first_index is None:
            continue

        analysis = analyzer.analyze(outcome.raw_text, outcome.first_index, target_domain=domain)
        competitors[outcome.provider] = analysis.competitors
        brand_rank[outcome.provider] = analysis.rank

    return ScoreSnapshot(
        mention_count=result.mention_count,
        weighted_score_percent=result.percent,
        providers_settled=len(outcomes),
        providers_total=providers_total if providers_total is not None else len(weights),
        competitors_per_provider=competitors,
        brand_rank=brand_rank,
    )
