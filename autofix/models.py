"""Pydantic data models - the contracts between pipeline components."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# --- Enums ---


class RunConclusion(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"


class SignalCategory(str, Enum):
    BUILD = "build"
    TEST = "test"
    DEPENDENCY = "dependency"
    LINT = "lint"
    SECURITY = "security"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class EditKind(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class ValidationFailure(str, Enum):
    NONE = "none"
    BUILD = "build"
    TEST = "test"
    COVERAGE = "coverage"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"


class Phase(str, Enum):
    COLLECTING = "collecting"
    CLASSIFYING = "classifying"
    PROPOSING = "proposing"
    VALIDATING = "validating"
    REFINING = "refining"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (Phase.PUBLISHED, Phase.EXHAUSTED, Phase.ABORTED)


class SubmitStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


# --- Workflow run (Collector output) ---


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    number: int = 0
    conclusion: str = ""


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = 0
    name: str
    conclusion: str = ""
    steps: tuple[StepResult, ...] = ()
    log: str = ""
    exit_code: int | None = None

    @property
    def failed(self) -> bool:
        return self.conclusion in ("failure", "timed_out")

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.conclusion in ("failure", "timed_out")]


class WorkflowRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    repository: str
    name: str = ""
    event: str = ""
    branch: str = ""
    commit_sha: str = ""
    url: str = ""
    conclusion: RunConclusion = RunConclusion.UNKNOWN
    jobs: tuple[JobResult, ...] = ()
    created_at: datetime | None = None

    @property
    def failed_jobs(self) -> list[JobResult]:
        return [j for j in self.jobs if j.failed]

    @property
    def failed_steps(self) -> list[tuple[str, StepResult]]:
        return [(j.name, s) for j in self.failed_jobs for s in j.failed_steps]


class RepoSnapshot(BaseModel):
    """The tree a candidate is validated against."""

    model_config = ConfigDict(frozen=True)

    repository: str
    commit_sha: str = ""
    source: str = ""  # clone URL or local checkout path


# --- Classifier output ---


class FailureSignal(BaseModel):
    category: SignalCategory
    excerpt: str
    job_name: str = ""
    test_name: str | None = None
    file_path: str | None = None
    line: int | None = None
    code: str | None = None
    exit_code: int | None = None
    position: int = 0

    @property
    def location(self) -> str:
        if self.file_path and self.line is not None:
            return f"{self.file_path}:{self.line}"
        return self.file_path or ""


# --- Provider output ---


class ProposedEdit(BaseModel):
    """An edit as described by a backend, before it is checked against the tree."""

    path: str
    kind: EditKind = EditKind.MODIFY
    content: str | None = None
    search: str | None = None
    replace: str | None = None
    explanation: str = ""


class ProviderProposal(BaseModel):
    """The JSON document every backend is asked to return."""

    root_cause: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    remediation_steps: list[str] = Field(default_factory=list)
    rationale: str = ""
    edits: list[ProposedEdit] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    id: str = Field(default_factory=lambda: _short_id("analysis"))
    provider: str
    model: str = ""
    root_cause: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    remediation_steps: list[str] = Field(default_factory=list)
    rationale: str = ""
    proposed_edits: list[ProposedEdit] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


# --- Fix Generator output ---


class FileEdit(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    kind: EditKind
    content: str | None = None  # full new content; None for deletes
    diff: str = ""
    explanation: str = ""


class FixCandidate(BaseModel):
    id: str = Field(default_factory=lambda: _short_id("fix"))
    edits: list[FileEdit]
    rationale: str = ""
    analysis: AnalysisResult

    @property
    def files_changed(self) -> list[str]:
        return [e.path for e in self.edits]

    @property
    def diff(self) -> str:
        return "\n".join(e.diff for e in self.edits if e.diff)


# --- Sandbox output ---


class ValidationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate_id: str
    passed: bool
    failure_kind: ValidationFailure = ValidationFailure.NONE
    detail: str = ""
    log: str = ""
    tests_passed: int = 0
    tests_failed: int = 0
    tests_skipped: int = 0
    coverage: float | None = None
    duration_seconds: float = 0.0

    @property
    def verdict(self) -> str:
        return "pass" if self.passed else "fail"


# --- Publisher output ---


class PullRequestRecord(BaseModel):
    repository: str
    run_id: int
    candidate_id: str
    branch: str
    commit_sha: str
    number: int
    url: str
    labels: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


# --- Coordinator bookkeeping ---


class ProviderAttempt(BaseModel):
    provider: str
    attempt: int
    round: int
    ok: bool
    error: str = ""
    duration_seconds: float = 0.0


@dataclass
class FallbackCursor:
    """Position in the provider priority list plus the audit trail of every call made."""

    index: int = 0
    failures: dict[str, int] = field(default_factory=dict)
    attempts: list[ProviderAttempt] = field(default_factory=list)
    analyses: list[AnalysisResult] = field(default_factory=list)
    rounds: int = 0

    def advance(self) -> None:
        self.index += 1

    @property
    def providers_tried(self) -> list[str]:
        seen: list[str] = []
        for a in self.attempts:
            if a.provider not in seen:
                seen.append(a.provider)
        return seen


@dataclass
class AttemptState:
    repository: str
    run_id: int
    phase: Phase = Phase.COLLECTING
    total_attempts: int = 0
    cursor: FallbackCursor = field(default_factory=FallbackCursor)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> tuple[str, int]:
        return (self.repository, self.run_id)

    @property
    def providers_tried(self) -> list[str]:
        return self.cursor.providers_tried


class RunOutcome(BaseModel):
    repository: str
    run_id: int
    phase: Phase
    reason: str = ""
    summary: str = ""
    root_cause: str = ""
    providers_tried: list[str] = Field(default_factory=list)
    attempts: list[ProviderAttempt] = Field(default_factory=list)
    analyses: list[AnalysisResult] = Field(default_factory=list)
    validations: list[ValidationReport] = Field(default_factory=list)
    pull_request: PullRequestRecord | None = None
    total_attempts: int = 0
    duration_seconds: float = 0.0
    finished_at: datetime = Field(default_factory=_utcnow)


class SubmitResult(BaseModel):
    status: SubmitStatus
    repository: str
    run_id: int
    detail: str = ""
