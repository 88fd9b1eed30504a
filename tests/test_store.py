"""Run / result stores (in-memory and SQLite share one contract)."""

import threading

import pytest

from visibility_check.errors import DuplicateOutcomeError, RunNotFound
from visibility_check.models import STATUS_OK, STATUS_TIMEOUT, ProviderOutcome, Query
from visibility_check.store import InMemoryRunStore, SqliteRunStore, build_run_store


@pytest.fixture(params=["memory", "sqlite"])
def run_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunStore()
    return SqliteRunStore(str(tmp_path / "runs.db"))


def outcome(provider, mentioned=False, status=STATUS_OK):
    return ProviderOutcome(provider=provider, model=f"{provider}-model", status=status,
                           mentioned=mentioned, raw_text=f"{provider} text",
                           first_index=0 if mentioned else None, latency_ms=10, cost_usd=0.001)


class TestRunStore:

    def test_create_and_get(self, run_store):
        query = Query.create("dating app", "tinder.com", "US", email="a@b.co")
        run = run_store.create_run(query, providers_expected=7)
        fetched = run_store.get_run(run.id)
        assert fetched == run
        assert fetched.query == query
        assert run_store.count_runs() == 1

    def test_outcomes_in_append_order(self, run_store, query):
        run = run_store.create_run(query, 3)
        for provider in ("perplexity", "openai", "claude"):
            run_store.append_outcome(run.id, outcome(provider, mentioned=provider == "openai"))
        listed = run_store.list_outcomes(run.id)
        assert [o.provider for o in listed] == ["perplexity", "openai", "claude"]
        assert listed[1].mentioned is True
        assert listed[1].first_index == 0

    def test_second_outcome_for_provider_rejected(self, run_store, query):
        run = run_store.create_run(query, 2)
        run_store.append_outcome(run.id, outcome("grok"))
        with pytest.raises(DuplicateOutcomeError):
            run_store.append_outcome(run.id, outcome("grok", status=STATUS_TIMEOUT))
        assert len(run_store.list_outcomes(run.id)) == 1

    def test_same_provider_in_different_runs(self, run_store, query):
        a = run_store.create_run(query, 1)
        b = run_store.create_run(query, 1)
        run_store.append_outcome(a.id, outcome("grok"))
        run_store.append_outcome(b.id, outcome("grok"))
        assert len(run_store.list_outcomes(a.id)) == 1
        assert len(run_store.list_outcomes(b.id)) == 1

    def test_unknown_run(self, run_store):
        with pytest.raises(RunNotFound):
            run_store.get_run("run_missing")
        with pytest.raises(RunNotFound):
            run_store.list_outcomes("run_missing")
        with pytest.raises(RunNotFound):
            run_store.append_outcome("run_missing", outcome("grok"))

    def test_run_not_found_is_a_key_error(self):
        assert isinstance(RunNotFound("run_x"), KeyError)
        assert str(RunNotFound("run_x")) == "Run not found: run_x"

    def test_concurrent_appends(self, run_store, query):
        providers = ["openai", "grok", "deepseek", "perplexity", "gemini", "claude", "google_ai_overview"]
        run = run_store.create_run(query, len(providers))
        threads = [threading.Thread(target=run_store.append_outcome, args=(run.id, outcome(p))) for p in providers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(o.provider for o in run_store.list_outcomes(run.id)) == sorted(providers)


class TestBuildRunStore:

    def test_sqlite_when_path_set(self, tmp_path):
        assert isinstance(build_run_store(str(tmp_path / "x" / "runs.db")), SqliteRunStore)

    def test_memory_by_default(self):
        assert isinstance(build_run_store(""), InMemoryRunStore)
