"""Provider orchestrator: prompting, retry and strictly ordered fallback across language-model backends."""

from __future__ import annotations

import logging
import queue
import threading
import time
from pathlib import Path
from string import Template

from autofix.errors import (
    AllProvidersExhausted,
    AutofixError,
    ProviderError,
    ProviderTimeout,
    UnparsablePatch,
    check_cancelled,
    wait_or_cancel,
)
from autofix.fixgen import FixGenerator, ReadFile
from autofix.models import (
    AnalysisResult,
    FailureSignal,
    FallbackCursor,
    FixCandidate,
    ProviderAttempt,
    ValidationFailure,
    ValidationReport,
    WorkflowRun,
)
from autofix.providers import PromptContext, Provider

logger = logging.getLogger("autofix.orchestrator")

PROMPTS_DIR = Path(__file__).parent / "prompts"

MAX_CONTEXT_FILES = 5
MAX_FILE_CHARS = 8000
MAX_LOG_TAIL_CHARS = 3000
MAX_FEEDBACK_LOG_CHARS = 2000
_POLL_SECONDS = 0.5


def load_system_prompt(protected_paths: list[str]) -> str:
    text = (PROMPTS_DIR / "remediation.txt").read_text()
    return Template(text).safe_substitute(protected_paths=", ".join(protected_paths))


def _no_files(path: str) -> str | None:
    return None


class ProviderOrchestrator:
    """Drives one proposal round over the priority-ordered provider list.

    The FallbackCursor is owned by the caller and survives across rounds, so a
    refinement round resumes at the provider the previous round ended on.
    """

    def __init__(
        self,
        providers: list[Provider],
        fix_generator: FixGenerator | None = None,
        max_attempts_per_provider: int = 2,
        call_timeout: float = 120.0,
        backoff_base: float = 1.0,
        system_prompt: str | None = None,
    ):
        self.providers = list(providers)
        self.fix_generator = fix_generator or FixGenerator()
        self.max_attempts_per_provider = max(1, max_attempts_per_provider)
        self.call_timeout = call_timeout
        self.backoff_base = backoff_base
        self._system_prompt = system_prompt

    @property
    def system_prompt(self) -> str:
        if self._system_prompt is None:
            self._system_prompt = load_system_prompt(self.fix_generator.protected_paths)
        return self._system_prompt

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def analyze_and_propose(
        self,
        signals: list[FailureSignal],
        run: WorkflowRun,
        cursor: FallbackCursor,
        feedback: ValidationReport | None = None,
        previous: FixCandidate | None = None,
        read_file: ReadFile | None = None,
        cancel: threading.Event | None = None,
    ) -> FixCandidate:
        """Return the first candidate any provider produces, in priority order.

        Raises AllProvidersExhausted once the cursor runs off the end of the list.
        """
        read_file = read_file or _no_files
        cursor.rounds += 1
        round_no = cursor.rounds
        context = PromptContext(
            system_prompt=self.system_prompt,
            user_message=self.build_prompt(signals, run, feedback, previous, read_file),
            run_id=run.id,
            round=round_no,
        )

        while cursor.index < len(self.providers):
            check_cancelled(cancel)
            provider = self.providers[cursor.index]
            attempt_no = sum(1 for a in cursor.attempts if a.provider == provider.name) + 1
            started = time.monotonic()

            try:
                analysis = self._invoke(provider, context, cancel)
                cursor.analyses.append(analysis)
                candidate = self.fix_generator.materialize(analysis, read_file)
            except (ProviderError, UnparsablePatch) as e:
                failures = cursor.failures.get(provider.name, 0) + 1
                cursor.failures[provider.name] = failures
                cursor.attempts.append(
                    ProviderAttempt(
                        provider=provider.name,
                        attempt=attempt_no,
                        round=round_no,
                        ok=False,
                        error=str(e),
                        duration_seconds=time.monotonic() - started,
                    )
                )
                if failures >= self.max_attempts_per_provider:
                    logger.warning(
                        f"[{provider.name}] failed {failures}/{self.max_attempts_per_provider} ({e}); falling back"
                    )
                    cursor.advance()
                else:
                    delay = self.backoff_base * (2 ** (failures - 1))
                    logger.warning(
                        f"[{provider.name}] attempt failed {failures}/{self.max_attempts_per_provider} ({e}); "
                        f"retrying in {delay:.1f}s"
                    )
                    wait_or_cancel(cancel, delay)
                continue

            cursor.failures[provider.name] = 0
            cursor.attempts.append(
                ProviderAttempt(
                    provider=provider.name,
                    attempt=attempt_no,
                    round=round_no,
                    ok=True,
                    duration_seconds=time.monotonic() - started,
                )
            )
            return candidate

        tried = ", ".join(cursor.providers_tried) or "none"
        raise AllProvidersExhausted(
            f"All providers exhausted without a usable candidate (tried: {tried})",
            attempts=cursor.attempts,
            analyses=cursor.analyses,
        )

    def _invoke(self, provider: Provider, context: PromptContext, cancel: threading.Event | None) -> AnalysisResult:
        """Call the provider on a worker thread with a hard wall-clock budget.

        A call that overruns is abandoned, not joined. The thread is a daemon so a
        hung backend never holds up interpreter exit.
        """
        box: queue.Queue[tuple[bool, object]] = queue.Queue(maxsize=1)

        def call() -> None:
            try:
                box.put((True, provider.propose(context)))
            except BaseException as e:
                box.put((False, e))

        threading.Thread(target=call, name=f"provider-{provider.name}", daemon=True).start()
        deadline = time.monotonic() + self.call_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProviderTimeout(provider.name, f"no response within {self.call_timeout}s")
            try:
                ok, value = box.get(timeout=min(remaining, _POLL_SECONDS))
            except queue.Empty:
                check_cancelled(cancel)
                continue
            if ok:
                return value
            if isinstance(value, TimeoutError):
                raise ProviderTimeout(provider.name, "request timed out") from value
            raise value

    # ------------------------------------------------------------------
    # Prompt construction
    # ------------------------------------------------------------------

    def build_prompt(
        self,
        signals: list[FailureSignal],
        run: WorkflowRun,
        feedback: ValidationReport | None,
        previous: FixCandidate | None,
        read_file: ReadFile,
    ) -> str:
        parts: list[str] = []

        failed = []
        for job in run.failed_jobs:
            steps = ", ".join(s.name for s in job.failed_steps) or "n/a"
            code = f", exit code {job.exit_code}" if job.exit_code is not None else ""
            failed.append(f"- {job.name} (failed steps: {steps}{code})")
        parts.append(
            "## Failed workflow run\n"
            f"Repository: {run.repository}\n"
            f"Run: #{run.id} {run.name} {run.url}\n"
            f"Trigger: {run.event or 'unknown'} on branch {run.branch or 'unknown'}\n"
            f"Commit: {run.commit_sha or 'unknown'}\n"
            f"Failed jobs:\n" + ("\n".join(failed) or "- none reported")
        )

        lines = []
        for i, s in enumerate(signals, 1):
            where = f" at {s.location}" if s.location else ""
            test = f" test={s.test_name}" if s.test_name else ""
            code = f" code={s.code}" if s.code else ""
            lines.append(f"{i}. [{s.category.value}]{where}{test}{code} ({s.job_name or 'job'}): {s.excerpt}")
        parts.append("## Failure signals (log order)\n" + "\n".join(lines))

        sources = self._source_excerpts(signals, previous, read_file)
        if sources:
            parts.append("## Relevant source files\n\n" + "\n\n".join(sources))

        for job in run.failed_jobs:
            if job.log:
                parts.append(f"## Log tail: {job.name}\n```\n{job.log[-MAX_LOG_TAIL_CHARS:]}\n```")

        if feedback is not None:
            parts.append(self._feedback_section(feedback, previous, run))

        parts.append("Return the JSON object described in your instructions.")
        return "\n\n".join(parts)

    def _source_excerpts(
        self,
        signals: list[FailureSignal],
        previous: FixCandidate | None,
        read_file: ReadFile,
    ) -> list[str]:
        paths: list[str] = []
        for s in signals:
            if not s.file_path:
                continue
            path = s.file_path[2:] if s.file_path.startswith("./") else s.file_path
            if path not in paths:
                paths.append(path)
        if previous is not None:
            for p in previous.files_changed:
                if p not in paths:
                    paths.append(p)

        excerpts = []
        for path in paths[:MAX_CONTEXT_FILES]:
            try:
                content = read_file(path)
            except AutofixError as e:
                logger.warning(f"Could not read {path} for prompt context: {e}")
                continue
            if content is None:
                continue
            if len(content) > MAX_FILE_CHARS:
                content = content[:MAX_FILE_CHARS] + "\n... (truncated)"
            excerpts.append(f"### {path}\n```\n{content}\n```")
        return excerpts

    def _feedback_section(self, report: ValidationReport, previous: FixCandidate | None, run: WorkflowRun) -> str:
        kind = report.failure_kind
        if kind == ValidationFailure.TIMEOUT:
            headline = (
                f"The previous fix TIMED OUT during validation after {report.duration_seconds:.0f}s. "
                "This is not an assertion failure: look for hangs, infinite loops or missing timeouts."
            )
        elif kind == ValidationFailure.TEST:
            headline = (
                f"Tests FAILED with the previous fix ({report.tests_passed} passed, {report.tests_failed} failed)."
            )
        elif kind == ValidationFailure.BUILD:
            headline = "The project no longer BUILDS with the previous fix."
        elif kind == ValidationFailure.COVERAGE:
            headline = f"Tests passed but coverage dropped to {report.coverage}%, below the required minimum."
        else:
            headline = "The sandbox could not validate the previous fix (infrastructure problem)."

        section = [f"## Previous attempt rejected\n{headline}", f"Detail: {report.detail}"]
        if previous is not None:
            section.append(f"Previous root cause: {previous.analysis.root_cause}")
            if previous.diff:
                section.append(f"Previous diff:\n```diff\n{previous.diff[:MAX_FILE_CHARS]}\n```")
        if report.log:
            section.append(f"Validation log tail:\n```\n{report.log[-MAX_FEEDBACK_LOG_CHARS:]}\n```")
        section.append(
            f"Your edits apply to the original tree at commit {run.commit_sha or 'HEAD'}, "
            "not on top of the previous attempt."
        )
        return "\n".join(section)
