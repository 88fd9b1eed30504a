"""
Fan-out of one Run across every dispatched provider.

Each provider runs in its own worker thread and turns its own failure into a
ProviderOutcome. The settlement loop on the calling thread persists outcomes
one at a time in completion order, so a poller sees them appear as they land.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from visibility_check import config
from visibility_check.cache import ResultCache
from visibility_check.errors import DuplicateOutcomeError, ProviderTimeout, StoreError
from visibility_check.fingerprint import fingerprint_query
from visibility_check.models import (
    RUN_COMPLETED,
    RUN_PARTIALLY_FAILED,
    STATUS_TIMEOUT,
    ProviderOutcome,
    Run,
)
from visibility_check.providers.base import ProviderAdapter, retry_with_backoff
from visibility_check.store import RunStore

logger = logging.getLogger(__name__)


def terminal_state(outcomes: list[ProviderOutcome]) -> str:
    return RUN_COMPLETED if all(o.settled_ok for o in outcomes) else RUN_PARTIALLY_FAILED


@dataclass
class RunSummary:
    run_id: str
    state: str
    outcomes: list[ProviderOutcome] = field(default_factory=list)
    cached: bool = False

    @property
    def mention_count(self) -> int:
        return sum(1 for o in self.outcomes if o.counts_as_mention)


class Orchestrator:
    """Dispatches a Run to every provider and persists each outcome as it settles."""

    def __init__(
        self,
        store: RunStore,
        providers: list[ProviderAdapter],
        cache: Optional[ResultCache] = None,
        ceiling_seconds: float = config.RUN_CEILING_SECONDS,
        max_retries: int = config.PROVIDER_MAX_RETRIES,
        retry_delay: float = config.PROVIDER_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.providers = list(providers)
        self.cache = cache
        self.ceiling_seconds = ceiling_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def settle_one(self, adapter: ProviderAdapter, run: Run, cancel: threading.Event) -> ProviderOutcome:
        """Run one adapter to a terminal outcome. Never raises."""
        query = run.query
        started = time.monotonic()
        try:
            result = retry_with_backoff(
                lambda: adapter.run(query, cancel),
                max_retries=self.max_retries,
                delay=self.retry_delay,
                label=adapter.key,
                cancel=cancel,
                sleep=self._sleep,
            )
        except ProviderTimeout as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.warning(f"⏱️  {adapter.key} timed out after {latency_ms}ms: {e}")
            return ProviderOutcome.failure(adapter.key, adapter.model, e, status=STATUS_TIMEOUT, latency_ms=latency_ms)
        except Exception as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"❌ {adapter.key} failed: {e}")
            return ProviderOutcome.failure(adapter.key, adapter.model, e, latency_ms=latency_ms)

        outcome = ProviderOutcome.from_result(adapter.key, adapter.model, result)
        target_status = "✓" if outcome.mentioned else "✗"
        logger.info(f"✅ {adapter.key} | {outcome.latency_ms}ms | Target: {target_status}")
        return outcome

    def _record(
        self,
        run: Run,
        outcome: ProviderOutcome,
        settled: list[ProviderOutcome],
        lost: list[tuple[str, Exception]],
    ) -> None:
        try:
            self.store.append_outcome(run.id, outcome)
        except DuplicateOutcomeError as e:
            logger.warning(f"⚠️  Dropping second outcome: {e}")
            return
        except Exception as e:
            # Keep settling the others; the run is failed once the loop ends
            logger.error(f"❌ {run.id}: could not persist {outcome.provider}: {e}")
            lost.append((outcome.provider, e))
            return
        settled.append(outcome)

    def run(self, run: Run, cancel: Optional[threading.Event] = None) -> RunSummary:
        """
        Dispatch every provider and block until all have settled.

        Providers still pending at the run ceiling are cancelled and recorded as
        `timeout`; a result that lands after that is discarded.

        Raises StoreError if any outcome could not be persisted. Every other
        outcome is still written, but the result cache is left untouched since
        the set is incomplete.
        """
        cancel = cancel if cancel is not None else threading.Event()
        settled: list[ProviderOutcome] = []
        lost: list[tuple[str, Exception]] = []
        if not self.providers:
            logger.warning(f"⚠️  {run.id}: no providers enabled")
            return RunSummary(run_id=run.id, state=RUN_COMPLETED)

        logger.info(f"🚀 {run.id}: dispatching {len(self.providers)} provider(s) for "
                    f"'{run.keyword}' / {run.domain} ({run.country}, {run.language})")

        executor = ThreadPoolExecutor(max_workers=len(self.providers), thread_name_prefix="provider")
        futures = {
            executor.submit(self.settle_one, adapter, run, cancel): adapter
            for adapter in self.providers
        }
        try:
            for future in as_completed(futures, timeout=self.ceiling_seconds):
                self._record(run, future.result(), settled, lost)
        except FuturesTimeout:
            cancel.set()
            done = {o.provider for o in settled} | {provider for provider, _ in lost}
            for adapter in self.providers:
                if adapter.key in done:
                    continue
                logger.warning(f"⏱️  {adapter.key} still pending at the {self.ceiling_seconds:g}s ceiling")
                error = ProviderTimeout(f"{adapter.key}: no result within {self.ceiling_seconds:g}s")
                outcome = ProviderOutcome.failure(adapter.key, adapter.model, error, status=STATUS_TIMEOUT)
                self._record(run, outcome, settled, lost)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if lost:
            names = ", ".join(provider for provider, _ in lost)
            first_error = lost[0][1]
            raise StoreError(f"{run.id}: could not persist {len(lost)} outcome(s) ({names}): {first_error}") from first_error

        if self.cache is not None:
            self.cache.save(fingerprint_query(run.query), settled)

        state = terminal_state(settled)
        logger.info(f"🏁 {run.id}: {state} ({sum(1 for o in settled if o.counts_as_mention)}/{len(settled)} mentioned)")
        return RunSummary(run_id=run.id, state=state, outcomes=settled)
