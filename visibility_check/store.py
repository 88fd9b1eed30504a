"""
Run / result storage.

Runs are written once at accept time; outcomes are appended one row per
(run, provider) and never updated. The (run_id, provider) identity is the only
consistency mechanism, so concurrent appends from different providers never
conflict.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from visibility_check import config
from visibility_check.errors import DuplicateOutcomeError, RunNotFound
from visibility_check.models import ProviderOutcome, Query, Run, new_run_id, utc_now_iso

logger = logging.getLogger(__name__)


class RunStore(ABC):

    @abstractmethod
    def create_run(self, query: Query, providers_expected: int) -> Run:
        ...

    @abstractmethod
    def get_run(self, run_id: str) -> Run:
        """Raises RunNotFound."""

    @abstractmethod
    def append_outcome(self, run_id: str, outcome: ProviderOutcome) -> None:
        """Raises RunNotFound, or DuplicateOutcomeError if the provider already has a row."""

    @abstractmethod
    def list_outcomes(self, run_id: str) -> list[ProviderOutcome]:
        """Outcomes in append order. Raises RunNotFound."""

    @abstractmethod
    def count_runs(self) -> int:
        ...


def _new_run(query: Query, providers_expected: int) -> Run:
    return Run(
        id=new_run_id(),
        keyword=query.keyword,
        domain=query.domain,
        country=query.country,
        language=query.language,
        email=query.email,
        created_at=utc_now_iso(),
        providers_expected=providers_expected,
    )


class InMemoryRunStore(RunStore):

    def __init__(self):
        self._runs: dict[str, Run] = {}
        self._outcomes: dict[str, list[ProviderOutcome]] = {}
        self._lock = threading.Lock()

    def create_run(self, query: Query, providers_expected: int) -> Run:
        run = _new_run(query, providers_expected)
        with self._lock:
            self._runs[run.id] = run
            self._outcomes[run.id] = []
        return run

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise RunNotFound(run_id) from None

    def append_outcome(self, run_id: str, outcome: ProviderOutcome) -> None:
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFound(run_id)
            rows = self._outcomes[run_id]
            if any(existing.provider == outcome.provider for existing in rows):
                raise DuplicateOutcomeError(f"{run_id} already has an outcome for {outcome.provider}")
            rows.append(outcome)

    def list_outcomes(self, run_id: str) -> list[ProviderOutcome]:
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFound(run_id)
            return list(self._outcomes[run_id])

    def count_runs(self) -> int:
        with self._lock:
            return len(self._runs)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    keyword TEXT NOT NULL,
    domain TEXT NOT NULL,
    country TEXT NOT NULL,
    language TEXT NOT NULL,
    email TEXT,
    created_at TEXT NOT NULL,
    providers_expected INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS run_results (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id),
    provider TEXT NOT NULL,
    model TEXT,
    status TEXT NOT NULL,
    mentioned INTEGER NOT NULL,
    first_index INTEGER,
    evidence TEXT,
    raw_text TEXT NOT NULL,
    latency_ms INTEGER,
    cost_usd REAL,
    tokens_used INTEGER,
    organic_rank INTEGER,
    UNIQUE (run_id, provider)
);
"""

_OUTCOME_COLUMNS = (
    "provider", "model", "status", "mentioned", "first_index", "evidence", "raw_text",
    "latency_ms", "cost_usd", "tokens_used", "organic_rank",
)


class SqliteRunStore(RunStore):
    """
    SQLite-backed store. One connection per call, so it is safe to use from the
    provider worker threads; the UNIQUE(run_id, provider) constraint enforces
    at most one outcome per provider.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.info(f"🗃️  Run store: SQLite at {db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def create_run(self, query: Query, providers_expected: int) -> Run:
        run = _new_run(query, providers_expected)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO runs (id, keyword, domain, country, language, email, created_at, providers_expected) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (run.id, run.keyword, run.domain, run.country, run.language, run.email,
                 run.created_at, run.providers_expected),
            )
        return run

    def get_run(self, run_id: str) -> Run:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            raise RunNotFound(run_id)
        return Run(**dict(row))

    def append_outcome(self, run_id: str, outcome: ProviderOutcome) -> None:
        self.get_run(run_id)
        values = outcome.to_dict()
        values["mentioned"] = int(outcome.mentioned)
        placeholders = ", ".join("?" for _ in _OUTCOME_COLUMNS)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO run_results (run_id, {', '.join(_OUTCOME_COLUMNS)}) VALUES (?, {placeholders})",
                    (run_id, *(values[c] for c in _OUTCOME_COLUMNS)),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateOutcomeError(f"{run_id} already has an outcome for {outcome.provider}") from e

    def list_outcomes(self, run_id: str) -> list[ProviderOutcome]:
        self.get_run(run_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(_OUTCOME_COLUMNS)} FROM run_results WHERE run_id = ? ORDER BY seq",
                (run_id,),
            ).fetchall()
        return [ProviderOutcome.from_dict(dict(row)) for row in rows]

    def count_runs(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM runs").fetchone()[0]


def build_run_store(db_path: str = config.RUN_DB_PATH) -> RunStore:
    if db_path:
        return SqliteRunStore(db_path)
    logger.info("🗃️  Run store: in-memory (RUN_DB_PATH not set)")
    return InMemoryRunStore()
