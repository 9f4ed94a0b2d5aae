"""Pull request publisher: commit a validated candidate to a fresh branch and open a pull request."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, TypeVar

from autofix.errors import PublishConflict, retry_transient
from autofix.models import (
    FailureSignal,
    FixCandidate,
    PullRequestRecord,
    SignalCategory,
    ValidationReport,
    WorkflowRun,
)
from autofix.scm import SourceControl

logger = logging.getLogger("autofix.publisher")

T = TypeVar("T")


def confidence_band(confidence: float) -> str:
    if confidence > 0.8:
        return "high"
    if confidence > 0.5:
        return "medium"
    return "low"


class PullRequestPublisher:
    def __init__(
        self,
        scm: SourceControl,
        target_branch: str = "",
        labels: list[str] | None = None,
        draft: bool = False,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
    ):
        self.scm = scm
        self.target_branch = target_branch
        self.labels = list(labels if labels is not None else ["autofix"])
        self.draft = draft
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

    def publish(
        self,
        candidate: FixCandidate,
        report: ValidationReport,
        run: WorkflowRun,
        signals: list[FailureSignal] | None = None,
        cancel: threading.Event | None = None,
    ) -> PullRequestRecord:
        """Raises ValueError for an unvalidated candidate, PermissionDenied without retry,
        PublishConflict if the single retry also conflicts, TransientFetchError once
        retries of a source-control call are exhausted."""
        if not report.passed:
            raise ValueError(f"refusing to publish {candidate.id}: validation verdict is {report.verdict}")
        if report.candidate_id != candidate.id:
            raise ValueError(
                f"refusing to publish {candidate.id}: validation report belongs to {report.candidate_id}"
            )

        category = primary_category(signals)
        base = self.target_branch or run.branch
        if not base:
            raise ValueError(f"no target branch for {run.repository}#{run.id}")

        branch = self.branch_name(candidate, run, category)
        try:
            return self._publish_once(candidate, report, run, category, base, branch, cancel)
        except PublishConflict as e:
            retry_branch = self.branch_name(candidate, run, category, suffix=str(int(time.time())))
            logger.warning(f"Publish conflict on {branch} ({e}); retrying once as {retry_branch}")
            return self._publish_once(candidate, report, run, category, base, retry_branch, cancel)

    @staticmethod
    def branch_name(
        candidate: FixCandidate,
        run: WorkflowRun,
        category: SignalCategory = SignalCategory.UNKNOWN,
        suffix: str = "",
    ) -> str:
        short = candidate.id.rsplit("-", 1)[-1][:8]
        name = f"autofix/{category.value}/{run.id}-{short}"
        return f"{name}-{suffix}" if suffix else name

    def _publish_once(
        self,
        candidate: FixCandidate,
        report: ValidationReport,
        run: WorkflowRun,
        category: SignalCategory,
        base: str,
        branch: str,
        cancel: threading.Event | None,
    ) -> PullRequestRecord:
        repo = run.repository

        def call(what: str, fn: Callable[[], T]) -> T:
            return retry_transient(fn, what, cancel, max_attempts=self.max_attempts, backoff_base=self.backoff_base)

        tip = call("get_branch_head", lambda: self.scm.get_branch_head(repo, base))
        if run.commit_sha and tip != run.commit_sha:
            self._check_unchanged(candidate, run, base, tip, call)

        call("create_branch", lambda: self.scm.create_branch(repo, branch, tip))
        message = self.commit_message(candidate, run)
        sha = call("commit", lambda: self.scm.commit(repo, branch, tip, candidate.edits, message))

        labels = self.labels_for(candidate, category)
        pr = call(
            "open_pull_request",
            lambda: self.scm.open_pull_request(
                repo,
                head=branch,
                base=base,
                title=self.title(candidate, run),
                body=self.body(candidate, report, run),
                labels=labels,
                draft=self.draft,
            ),
        )
        record = PullRequestRecord(
            repository=run.repository,
            run_id=run.id,
            candidate_id=candidate.id,
            branch=branch,
            commit_sha=sha,
            number=pr["number"],
            url=pr.get("url", ""),
            labels=labels,
        )
        logger.info(f"Published {candidate.id} for {run.repository}#{run.id} as PR #{record.number}")
        return record

    def _check_unchanged(
        self,
        candidate: FixCandidate,
        run: WorkflowRun,
        base: str,
        tip: str,
        call: Callable[[str, Callable[[], str | None]], str | None],
    ) -> None:
        """Edits carry whole files resolved at the failing commit. Committing them on a tip
        that changed those files would revert the newer work, so that is a conflict."""
        repo = run.repository
        for edit in candidate.edits:
            validated = call("fetch_file", lambda: self.scm.fetch_file(repo, edit.path, run.commit_sha))
            current = call("fetch_file", lambda: self.scm.fetch_file(repo, edit.path, tip))
            if validated != current:
                raise PublishConflict(
                    f"{edit.path} changed on {base} since {run.commit_sha[:7]} (now at {tip[:7]})"
                )
        logger.info(f"{base} moved to {tip[:7]} but none of the {len(candidate.edits)} edited files changed")

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def labels_for(self, candidate: FixCandidate, category: SignalCategory) -> list[str]:
        labels = list(self.labels)
        for extra in (f"{category.value}-failure", f"confidence-{confidence_band(candidate.analysis.confidence)}"):
            if extra not in labels:
                labels.append(extra)
        return labels

    @staticmethod
    def title(candidate: FixCandidate, run: WorkflowRun) -> str:
        root_cause = candidate.analysis.root_cause.strip().splitlines()[0] if candidate.analysis.root_cause else ""
        if len(root_cause) > 72:
            root_cause = root_cause[:69] + "..."
        return f"autofix: {root_cause or 'repair failing CI'} (run #{run.id})"

    @staticmethod
    def commit_message(candidate: FixCandidate, run: WorkflowRun) -> str:
        return (
            f"autofix: repair failing run #{run.id}\n\n"
            f"{candidate.analysis.root_cause}\n\n"
            f"Provider: {candidate.analysis.provider}\n"
            f"Files: {', '.join(candidate.files_changed)}"
        )

    @staticmethod
    def body(candidate: FixCandidate, report: ValidationReport, run: WorkflowRun) -> str:
        a = candidate.analysis
        steps = "\n".join(f"{i}. {s}" for i, s in enumerate(a.remediation_steps, 1)) or "_none given_"
        changes = "\n".join(
            f"- `{e.path}` ({e.kind.value}){': ' + e.explanation if e.explanation else ''}" for e in candidate.edits
        )
        coverage = f"{report.coverage:.1f}%" if report.coverage is not None else "n/a"
        return (
            f"## Automated CI Fix\n\n"
            f"**Failed run:** {run.url or f'#{run.id}'}\n"
            f"**Branch / commit:** {run.branch} @ `{run.commit_sha[:7]}`\n\n"
            f"### Root cause\n{a.root_cause}\n\n"
            f"**Confidence:** {a.confidence:.2f} ({confidence_band(a.confidence)})\n"
            f"**Provider:** {a.provider} ({a.model})\n\n"
            f"### Remediation steps\n{steps}\n\n"
            f"### Changes\n{changes}\n\n"
            f"### Rationale\n{candidate.rationale}\n\n"
            f"### Validation\n"
            f"- Verdict: **{report.verdict}**\n"
            f"- Tests: {report.tests_passed} passed, {report.tests_failed} failed, {report.tests_skipped} skipped\n"
            f"- Coverage: {coverage}\n"
            f"- Duration: {report.duration_seconds:.1f}s\n\n"
            f"---\n"
            f"Candidate `{candidate.id}` / analysis `{a.id}`. Review before merging."
        )


def primary_category(signals: list[FailureSignal] | None) -> SignalCategory:
    """First non-unknown category in log order."""
    for s in signals or []:
        if s.category != SignalCategory.UNKNOWN:
            return s.category
    return SignalCategory.UNKNOWN
