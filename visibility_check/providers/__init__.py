from visibility_check.providers.base import ProviderAdapter, build_prompt, retry_with_backoff
from visibility_check.providers.google_search import SerpApiCache
from visibility_check.providers.registry import PROVIDER_KEYS, build_registry, enabled_providers

__all__ = [
    "PROVIDER_KEYS",
    "ProviderAdapter",
    "SerpApiCache",
    "build_prompt",
    "build_registry",
    "enabled_providers",
    "retry_with_backoff",
]
