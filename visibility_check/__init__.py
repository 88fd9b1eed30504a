"""Multi-provider brand visibility checker."""

from visibility_check.errors import (
    PollTimeout,
    ProviderError,
    QueryValidationError,
    RunNotFound,
    VisibilityCheckError,
)
from visibility_check.models import ProviderOutcome, Query, Run, ScoreSnapshot
from visibility_check.service import VisibilityService, poll_until_complete

__version__ = "0.3.0"

__all__ = [
    "PollTimeout",
    "ProviderError",
    "ProviderOutcome",
    "Query",
    "QueryValidationError",
    "Run",
    "RunNotFound",
    "ScoreSnapshot",
    "VisibilityCheckError",
    "VisibilityService",
    "poll_until_complete",
]
