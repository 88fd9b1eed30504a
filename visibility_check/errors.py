"""Exception hierarchy for the visibility checker."""

from __future__ import annotations


class VisibilityCheckError(Exception):
    """Base class for every error raised by this package."""


class QueryValidationError(VisibilityCheckError, ValueError):
    """A submitted query was rejected before a run was created."""

    def __init__(self, issues: dict[str, str]):
        self.issues = dict(issues)
        detail = "; ".join(f"{field}: {msg}" for field, msg in self.issues.items())
        super().__init__(f"Invalid input ({detail})")


# --- Provider errors ---

class ProviderError(VisibilityCheckError):
    """A provider adapter failed. Converted to an outcome, never propagated past the fan-out."""


class ProviderConfigError(ProviderError):
    """Credential or setting missing; raised before any network call."""


class ProviderTimeout(ProviderError):
    """The stream deadline or the run ceiling fired."""


class ProviderCancelled(ProviderError):
    """The run was cancelled while the provider was still streaming."""


class UpstreamResponseError(ProviderError):
    """The upstream API answered, but with an error payload."""


# --- Store errors ---

class StoreError(VisibilityCheckError):
    pass


class RunNotFound(StoreError, KeyError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateOutcomeError(StoreError):
    """A second outcome was appended for the same (run, provider)."""


class PollTimeout(VisibilityCheckError, TimeoutError):
    """Client-side polling budget exhausted before every provider settled."""
