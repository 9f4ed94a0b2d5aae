"""Tests for Pydantic data models."""

import pytest
from pydantic import ValidationError

from autofix.models import (
    AnalysisResult,
    AttemptState,
    EditKind,
    FailureSignal,
    FallbackCursor,
    FileEdit,
    FixCandidate,
    JobResult,
    Phase,
    ProviderAttempt,
    ProviderProposal,
    SignalCategory,
    StepResult,
    ValidationReport,
    WorkflowRun,
)


class TestPhase:
    def test_terminal_phases(self):
        assert {p for p in Phase if p.terminal} == {Phase.PUBLISHED, Phase.EXHAUSTED, Phase.ABORTED}


class TestWorkflowRun:
    def test_failed_jobs_and_steps(self):
        run = WorkflowRun(
            id=1,
            repository="acme/widgets",
            jobs=(
                JobResult(name="lint", conclusion="success"),
                JobResult(
                    name="test",
                    conclusion="timed_out",
                    steps=(
                        StepResult(name="setup", conclusion="success"),
                        StepResult(name="pytest", conclusion="timed_out"),
                    ),
                ),
            ),
        )
        assert [j.name for j in run.failed_jobs] == ["test"]
        assert [(job, step.name) for job, step in run.failed_steps] == [("test", "pytest")]

    def test_frozen(self):
        run = WorkflowRun(id=1, repository="acme/widgets")
        with pytest.raises(ValidationError):
            run.id = 2


class TestFailureSignal:
    def test_location(self):
        assert FailureSignal(category=SignalCategory.LINT, excerpt="x", file_path="a.py", line=3).location == "a.py:3"
        assert FailureSignal(category=SignalCategory.LINT, excerpt="x", file_path="a.py").location == "a.py"
        assert FailureSignal(category=SignalCategory.UNKNOWN, excerpt="x").location == ""


class TestProviderProposal:
    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            ProviderProposal(root_cause="x", confidence=1.5)

    def test_defaults(self):
        proposal = ProviderProposal(root_cause="x")
        assert proposal.confidence == 0.5
        assert proposal.edits == []


class TestFixCandidate:
    def test_files_changed_and_diff(self):
        candidate = FixCandidate(
            edits=[
                FileEdit(path="a.py", kind=EditKind.MODIFY, content="", diff="--- a/a.py"),
                FileEdit(path="b.py", kind=EditKind.DELETE),
            ],
            analysis=AnalysisResult(provider="anthropic", root_cause="x"),
        )
        assert candidate.id.startswith("fix-")
        assert candidate.files_changed == ["a.py", "b.py"]
        assert candidate.diff == "--- a/a.py"

    def test_ids_are_unique(self):
        analysis = AnalysisResult(provider="anthropic", root_cause="x")
        assert FixCandidate(edits=[], analysis=analysis).id != FixCandidate(edits=[], analysis=analysis).id


class TestValidationReport:
    def test_verdict(self):
        assert ValidationReport(candidate_id="fix-1", passed=True).verdict == "pass"
        assert ValidationReport(candidate_id="fix-1", passed=False).verdict == "fail"


class TestFallbackCursor:
    def test_providers_tried_in_first_call_order(self):
        cursor = FallbackCursor(
            attempts=[
                ProviderAttempt(provider="openai", attempt=1, round=1, ok=False),
                ProviderAttempt(provider="anthropic", attempt=1, round=1, ok=False),
                ProviderAttempt(provider="openai", attempt=2, round=2, ok=True),
            ]
        )
        assert cursor.providers_tried == ["openai", "anthropic"]
        cursor.advance()
        assert cursor.index == 1

    def test_attempt_state_defaults(self):
        state = AttemptState(repository="acme/widgets", run_id=5)
        assert state.key == ("acme/widgets", 5)
        assert state.phase == Phase.COLLECTING
        assert state.total_attempts == 0
        assert state.providers_tried == []
        assert not state.cancel_event.is_set()
