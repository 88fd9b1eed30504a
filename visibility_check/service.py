"""
Submit / Poll / Report facade.

`submit` validates, checks the result cache, and either replays a cached run
(status "completed") or hands the run to a background worker (status
"running"). `poll` and `report` only read the store, so they can be called at
any time and always reflect the outcomes persisted so far.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from visibility_check import config
from visibility_check.cache import MemoryCacheStore, ResultCache, build_cache_store
from visibility_check.errors import PollTimeout
from visibility_check.fingerprint import fingerprint_query
from visibility_check.models import (
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    ProviderOutcome,
    Query,
    Run,
    ScoreSnapshot,
)
from visibility_check.notify import send_run_summary
from visibility_check.orchestrator import Orchestrator, RunSummary, terminal_state
from visibility_check.providers import SerpApiCache, build_registry, enabled_providers
from visibility_check.providers.base import ProviderAdapter
from visibility_check.scoring import build_snapshot
from visibility_check.store import InMemoryRunStore, RunStore, build_run_store

logger = logging.getLogger(__name__)

Notifier = Callable[[Run, list, ScoreSnapshot], bool]


@dataclass
class SubmitResponse:
    run_id: str
    status: str
    created_at: str
    providers_expected: int
    cached: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PollResponse:
    run_id: str
    status: str
    providers_expected: int
    outcomes: list[ProviderOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def providers_done(self) -> int:
        return len(self.outcomes)

    @property
    def finished(self) -> bool:
        return self.status != RUN_RUNNING

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "providers_expected": self.providers_expected,
            "providers_done": self.providers_done,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "error": self.error,
        }


class VisibilityService:

    def __init__(
        self,
        store: Optional[RunStore] = None,
        cache: Optional[ResultCache] = None,
        providers: Optional[list[ProviderAdapter]] = None,
        orchestrator: Optional[Orchestrator] = None,
        notifier: Optional[Notifier] = send_run_summary,
        weights: Optional[dict[str, float]] = None,
        workers: int = config.RUN_WORKERS,
    ):
        self.store = store if store is not None else InMemoryRunStore()
        self.cache = cache if cache is not None else ResultCache(MemoryCacheStore())
        if orchestrator is not None:
            # providers_expected must match what the orchestrator actually dispatches
            self.orchestrator = orchestrator
            self.providers = list(orchestrator.providers)
        else:
            self.providers = list(providers) if providers is not None else enabled_providers()
            self.orchestrator = Orchestrator(self.store, self.providers, cache=self.cache)
        self.notifier = notifier
        self.weights = config.PROVIDER_WEIGHTS if weights is None else weights

        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="run")
        self._futures: dict[str, Future] = {}
        self._cancels: dict[str, threading.Event] = {}
        # run_id -> error message for runs that broke before every outcome was stored
        self._failures: dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls) -> "VisibilityService":
        """Wire Redis / SQLite / SerpAPI cache from environment settings."""
        registry = build_registry(serp_cache=SerpApiCache())
        return cls(
            store=build_run_store(),
            cache=ResultCache(build_cache_store()),
            providers=enabled_providers(registry),
        )

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def submit(
        self,
        keyword: str,
        domain: str,
        country: str,
        language: Optional[str] = "en",
        email: Optional[str] = None,
    ) -> SubmitResponse:
        """Raises QueryValidationError before anything is created."""
        query = Query.create(keyword, domain, country, language, email)
        key = fingerprint_query(query)

        cached = self.cache.load(key)
        if cached:
            logger.info(f"🗄️  Cache hit for {key}: replaying {len(cached)} outcome(s)")
            return self._replay(query, cached)

        logger.info(f"🔎 Cache miss for {key}")
        run = self.store.create_run(query, providers_expected=len(self.providers))
        cancel = threading.Event()
        with self._lock:
            self._cancels[run.id] = cancel
            self._futures[run.id] = self._executor.submit(self._execute, run, cancel)

        return SubmitResponse(
            run_id=run.id,
            status=RUN_RUNNING,
            created_at=run.created_at,
            providers_expected=run.providers_expected,
        )

    def _replay(self, query: Query, outcomes: list[ProviderOutcome]) -> SubmitResponse:
        run = self.store.create_run(query, providers_expected=len(outcomes))
        for outcome in outcomes:
            self.store.append_outcome(run.id, outcome)
        self._notify(run)
        return SubmitResponse(
            run_id=run.id,
            status=RUN_COMPLETED,
            created_at=run.created_at,
            providers_expected=run.providers_expected,
            cached=True,
        )

    def _execute(self, run: Run, cancel: threading.Event) -> RunSummary:
        try:
            summary = self.orchestrator.run(run, cancel)
            self._notify(run)
            return summary
        except Exception as e:
            logger.exception(f"❌ Run {run.id} failed")
            with self._lock:
                self._failures[run.id] = str(e)
            raise
        finally:
            # Runs before the future resolves, so nothing is left behind once wait() returns
            with self._lock:
                self._cancels.pop(run.id, None)
                self._futures.pop(run.id, None)

    def _notify(self, run: Run) -> None:
        if not run.email or self.notifier is None:
            return
        outcomes = self.store.list_outcomes(run.id)
        self.notifier(run, outcomes, self._snapshot(run, outcomes))

    # ------------------------------------------------------------------
    # Poll / Report
    # ------------------------------------------------------------------

    def poll(self, run_id: str) -> PollResponse:
        """Raises RunNotFound for an unknown id."""
        run = self.store.get_run(run_id)
        outcomes = self.store.list_outcomes(run_id)
        with self._lock:
            failure = self._failures.get(run_id)
        if len(outcomes) >= run.providers_expected:
            status = terminal_state(outcomes)
        elif failure is not None:
            status = RUN_FAILED
        else:
            status = RUN_RUNNING
        return PollResponse(
            run_id=run.id,
            status=status,
            providers_expected=run.providers_expected,
            outcomes=outcomes,
            error=failure,
        )

    def _snapshot(self, run: Run, outcomes: list[ProviderOutcome]) -> ScoreSnapshot:
        return build_snapshot(outcomes, run.domain, weights=self.weights, providers_total=run.providers_expected)

    def report(self, run_id: str) -> ScoreSnapshot:
        run = self.store.get_run(run_id)
        return self._snapshot(run, self.store.list_outcomes(run_id))

    def wait(self, run_id: str, timeout: Optional[float] = None) -> PollResponse:
        """
        Block until a background run has settled, then poll it.

        A run that broke is reported through the poll (status "failed"), not
        raised here. Raises TimeoutError if the run is still going at timeout.
        """
        with self._lock:
            future = self._futures.get(run_id)
        if future is not None:
            wait_futures([future], timeout=timeout)
            if not future.done():
                raise TimeoutError(f"{run_id}: still running after {timeout}s")
        return self.poll(run_id)

    def health(self) -> dict:
        try:
            runs = self.store.count_runs()
        except Exception as e:
            logger.error(f"❌ Health check: store unreachable: {e}")
            return {"status": "error", "store": "unreachable", "error": str(e)}
        return {
            "status": "ok",
            "store": "reachable",
            "runs": runs,
            "providers": [p.key for p in self.providers],
        }

    def shutdown(self, wait: bool = True) -> None:
        """Cancel in-flight providers and stop the worker pool."""
        with self._lock:
            for cancel in self._cancels.values():
                cancel.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> "VisibilityService":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


def poll_until_complete(
    service: VisibilityService,
    run_id: str,
    interval: float = config.POLL_INTERVAL,
    max_attempts: int = config.POLL_MAX_ATTEMPTS,
    on_progress: Optional[Callable[[int, ProviderOutcome, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResponse:
    """
    Poll until every expected provider has settled.

    on_progress(n, outcome, providers_expected) fires once per newly seen
    outcome, in the order the store returns them. Raises PollTimeout when the
    attempt budget runs out.
    """
    seen = 0
    for attempt in range(max_attempts):
        response = service.poll(run_id)
        if on_progress is not None:
            for outcome in response.outcomes[seen:]:
                seen += 1
                on_progress(seen, outcome, response.providers_expected)
        if response.finished:
            return response
        if attempt < max_attempts - 1:
            sleep(interval)
    raise PollTimeout(f"{run_id}: still running after {max_attempts} poll(s)")
