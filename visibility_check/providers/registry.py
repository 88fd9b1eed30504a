"""Fixed, ordered table of provider adapters."""

from __future__ import annotations

import logging
from typing import Optional

from visibility_check import config
from visibility_check.providers.base import ProviderAdapter
from visibility_check.providers.claude import ClaudeAdapter
from visibility_check.providers.gemini import GeminiAdapter
from visibility_check.providers.google_search import GoogleAiOverviewAdapter, SerpApiCache
from visibility_check.providers.openai_compat import (
    ChatGPTAdapter,
    DeepSeekAdapter,
    GrokAdapter,
    PerplexityAdapter,
)

logger = logging.getLogger(__name__)

# Registry order is part of the contract (ties, display order)
PROVIDER_KEYS = (
    "openai",
    "grok",
    "deepseek",
    "perplexity",
    "gemini",
    "claude",
    "google_ai_overview",
)


def build_registry(serp_cache: Optional[SerpApiCache] = None, **adapter_kwargs) -> list[ProviderAdapter]:
    """Every adapter in registry order, enabled or not."""
    return [
        ChatGPTAdapter(**adapter_kwargs),
        GrokAdapter(**adapter_kwargs),
        DeepSeekAdapter(**adapter_kwargs),
        PerplexityAdapter(**adapter_kwargs),
        GeminiAdapter(**adapter_kwargs),
        ClaudeAdapter(**adapter_kwargs),
        GoogleAiOverviewAdapter(serp_cache=serp_cache, **adapter_kwargs),
    ]


def enabled_providers(
    registry: Optional[list[ProviderAdapter]] = None,
    enabled: Optional[dict[str, bool]] = None,
) -> list[ProviderAdapter]:
    registry = build_registry() if registry is None else registry
    enabled = config.PROVIDER_ENABLED if enabled is None else enabled
    selected = [adapter for adapter in registry if enabled.get(adapter.key, True)]

    skipped = [adapter.key for adapter in registry if adapter not in selected]
    if skipped:
        logger.info(f"⏭️  Disabled by config: {', '.join(skipped)} ({len(selected)}/{len(registry)} dispatched)")
    return selected
