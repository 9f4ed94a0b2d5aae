"""Tests for database operations."""

from datetime import datetime, timedelta, timezone

from autofix.db import Database
from autofix.models import (
    AnalysisResult,
    Phase,
    ProviderAttempt,
    PullRequestRecord,
    RunOutcome,
    ValidationFailure,
    ValidationReport,
)


def _outcome(run_id=1, phase=Phase.PUBLISHED, repository="acme/widgets", **kw):
    return RunOutcome(repository=repository, run_id=run_id, phase=phase, reason="done", **kw)


class TestDatabaseTables:
    def test_tables_created(self, test_db):
        rows = test_db.fetchall("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = [row["name"] for row in rows]
        assert "remediation_runs" in tables
        assert "provider_attempts" in tables

    def test_reopen_is_idempotent(self, tmp_path):
        path = tmp_path / "nested" / "audit.db"
        Database(path).close()
        db = Database(path)
        assert db.fetchall("SELECT * FROM remediation_runs") == []
        db.close()

    def test_in_memory(self):
        db = Database(":memory:")
        assert db.fetchone("SELECT COUNT(*) as n FROM remediation_runs")["n"] == 0
        db.close()


class TestOutcomes:
    def test_record_published_outcome(self, test_db):
        outcome = _outcome(
            root_cause="wrong constant",
            providers_tried=["anthropic", "openai"],
            total_attempts=2,
            analyses=[
                AnalysisResult(provider="anthropic", root_cause="a", input_tokens=100, output_tokens=20),
                AnalysisResult(provider="openai", root_cause="b", input_tokens=50, output_tokens=10),
            ],
            validations=[
                ValidationReport(candidate_id="fix-1", passed=False, failure_kind=ValidationFailure.TEST),
                ValidationReport(candidate_id="fix-2", passed=True),
            ],
            pull_request=PullRequestRecord(
                repository="acme/widgets",
                run_id=1,
                candidate_id="fix-2",
                branch="autofix/test/1-abc",
                commit_sha="c1",
                number=9,
                url="https://github.com/acme/widgets/pull/9",
            ),
        )
        rid = test_db.record_outcome(outcome)

        row = test_db.get_recent_outcomes()[0]
        assert row["id"] == rid
        assert row["phase"] == "published"
        assert row["providers_tried"] == ["anthropic", "openai"]
        assert row["validations"] == [
            {"candidate_id": "fix-1", "verdict": "fail", "failure_kind": "test"},
            {"candidate_id": "fix-2", "verdict": "pass", "failure_kind": "none"},
        ]
        assert row["pr_number"] == 9
        assert row["pr_branch"] == "autofix/test/1-abc"
        assert row["input_tokens"] == 150
        assert row["output_tokens"] == 30

    def test_aborted_outcome_has_no_pr(self, test_db):
        test_db.record_outcome(_outcome(phase=Phase.ABORTED))
        row = test_db.get_recent_outcomes()[0]
        assert row["pr_number"] is None
        assert row["providers_tried"] == []
        assert row["validations"] == []

    def test_recent_outcomes_filter_and_order(self, test_db):
        now = datetime.now(timezone.utc)
        test_db.record_outcome(_outcome(run_id=1, finished_at=now - timedelta(minutes=5)))
        test_db.record_outcome(_outcome(run_id=2, finished_at=now))
        test_db.record_outcome(_outcome(run_id=3, repository="acme/other", finished_at=now - timedelta(minutes=1)))

        assert [r["run_id"] for r in test_db.get_recent_outcomes()] == [2, 3, 1]
        assert [r["run_id"] for r in test_db.get_recent_outcomes(repository="acme/widgets")] == [2, 1]
        assert len(test_db.get_recent_outcomes(limit=1)) == 1

    def test_success_rate(self, test_db):
        assert test_db.get_success_rate() == 0.0
        test_db.record_outcome(_outcome(run_id=1))
        test_db.record_outcome(_outcome(run_id=2, phase=Phase.EXHAUSTED))
        test_db.record_outcome(_outcome(run_id=3, phase=Phase.ABORTED, repository="acme/other"))
        assert abs(test_db.get_success_rate() - 1 / 3) < 1e-9
        assert test_db.get_success_rate(repository="acme/widgets") == 0.5


class TestProviderStats:
    def test_attempts_are_aggregated(self, test_db):
        attempts = [
            ProviderAttempt(provider="anthropic", attempt=1, round=1, ok=False, error="timeout", duration_seconds=4.0),
            ProviderAttempt(provider="anthropic", attempt=2, round=1, ok=False, error="timeout", duration_seconds=2.0),
            ProviderAttempt(provider="openai", attempt=1, round=1, ok=True, duration_seconds=1.0),
        ]
        test_db.record_outcome(_outcome(attempts=attempts))

        stats = test_db.get_provider_stats()
        assert [s["provider"] for s in stats] == ["anthropic", "openai"]
        assert stats[0]["calls"] == 2
        assert stats[0]["failures"] == 2
        assert stats[0]["successes"] == 0
        assert stats[0]["avg_duration_seconds"] == 3.0
        assert stats[1]["successes"] == 1

    def test_no_attempts(self, test_db):
        assert test_db.get_provider_stats() == []
