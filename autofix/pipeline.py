"""Pipeline wiring: builds every component from Settings and owns the dispatcher."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from autofix.classifier import FailureClassifier
from autofix.collector import FailureCollector
from autofix.config import Settings
from autofix.coordinator import Components, Dispatcher
from autofix.db import Database
from autofix.errors import retry_transient
from autofix.fixgen import FixGenerator, ReadFile
from autofix.git_utils import read_source_file
from autofix.integrations.slack import format_outcome_alert, send_slack_message
from autofix.models import RepoSnapshot, RunOutcome, SubmitResult, SubmitStatus, WorkflowRun
from autofix.orchestrator import ProviderOrchestrator
from autofix.providers import Provider, build_providers
from autofix.publisher import PullRequestPublisher
from autofix.sandbox import LocalSandboxRuntime, SandboxRuntime, ValidationSandbox
from autofix.scm import GitHubCLIClient, SourceControl

logger = logging.getLogger("autofix.pipeline")


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        checkout: Path | None = None,
        scm: SourceControl | None = None,
        providers: list[Provider] | None = None,
        runtime: SandboxRuntime | None = None,
        db: Database | None = None,
    ):
        self.settings = settings
        self.checkout = checkout
        self.db = db or Database(settings.db_path)
        self.scm = scm or GitHubCLIClient()

        self.fix_generator = FixGenerator(settings.protected_paths)
        self.components = Components(
            collector=FailureCollector(
                self.scm,
                max_attempts=settings.collector_max_attempts,
                backoff_base=settings.collector_backoff_seconds,
            ),
            classifier=FailureClassifier(),
            orchestrator=ProviderOrchestrator(
                providers if providers is not None else build_providers(settings),
                fix_generator=self.fix_generator,
                max_attempts_per_provider=settings.max_attempts_per_provider,
                call_timeout=settings.provider_timeout_seconds,
                backoff_base=settings.provider_backoff_seconds,
            ),
            sandbox=ValidationSandbox(
                runtime or LocalSandboxRuntime(),
                timeout_seconds=settings.validation_timeout_seconds,
                build_command=settings.build_command,
                test_command=settings.test_command,
                coverage_command=settings.coverage_command,
                min_coverage=settings.min_coverage,
            ),
            publisher=PullRequestPublisher(
                self.scm,
                target_branch=settings.target_branch,
                labels=settings.pr_labels,
                draft=settings.draft_pr,
                max_attempts=settings.collector_max_attempts,
                backoff_base=settings.collector_backoff_seconds,
            ),
            read_file_factory=self.read_file_for,
            snapshot_factory=self.snapshot_for,
        )
        self.dispatcher = Dispatcher(
            self.components,
            settings.policy(),
            worker_count=settings.worker_count,
            queue_size=settings.queue_size,
        )
        self.dispatcher.on_outcome(self._record_outcome)
        self.dispatcher.on_outcome(self._alert)

    # ------------------------------------------------------------------
    # Factories handed to every coordinator
    # ------------------------------------------------------------------

    def read_file_for(self, run: WorkflowRun) -> ReadFile:
        """Source reader pinned to the failing commit.

        A missing file reads as None. Transient failures are retried and never
        cached; anything else propagates and ends the run.
        """
        cache: dict[str, str | None] = {}
        lock = threading.Lock()
        ref = run.commit_sha or run.branch

        def read(path: str) -> str | None:
            with lock:
                if path in cache:
                    return cache[path]
            if self.checkout is not None:
                content = read_source_file(self.checkout, path)
            else:
                content = retry_transient(
                    lambda: self.scm.fetch_file(run.repository, path, ref),
                    f"fetch_file {path}",
                    max_attempts=self.settings.collector_max_attempts,
                    backoff_base=self.settings.collector_backoff_seconds,
                )
                if content is None:
                    logger.debug(f"{path} does not exist at {ref[:7]} in {run.repository}")
            with lock:
                cache[path] = content
            return content

        return read

    def snapshot_for(self, run: WorkflowRun) -> RepoSnapshot:
        if self.checkout is not None:
            source = str(self.checkout.resolve())
        else:
            source = self.settings.clone_url_template.format(repository=run.repository)
        return RepoSnapshot(repository=run.repository, commit_sha=run.commit_sha, source=source)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.dispatcher.start()

    def submit(self, repository: str, run_id: int) -> SubmitResult:
        return self.dispatcher.submit(repository, run_id)

    def remediate(self, repository: str, run_id: int, timeout: float | None = None) -> RunOutcome | SubmitResult:
        """Submit one run and block until it reaches a terminal phase.

        Returns the SubmitResult instead when the run was not accepted.
        """
        self.start()
        result = self.submit(repository, run_id)
        if result.status != SubmitStatus.ACCEPTED:
            return result
        outcome = self.dispatcher.wait(repository, run_id, timeout=timeout)
        return outcome if outcome is not None else result

    def close(self, cancel_running: bool = False) -> None:
        self.dispatcher.shutdown(wait=True, cancel_running=cancel_running)
        self.db.close()

    # ------------------------------------------------------------------
    # Outcome hooks
    # ------------------------------------------------------------------

    def _record_outcome(self, outcome: RunOutcome) -> None:
        self.db.record_outcome(outcome)

    def _alert(self, outcome: RunOutcome) -> None:
        if self.settings.slack_webhook_url:
            send_slack_message(self.settings.slack_webhook_url, format_outcome_alert(outcome))
