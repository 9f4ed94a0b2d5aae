"""Failure collector: turns a workflow-run identifier into a normalized WorkflowRun."""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import Any, Callable, TypeVar

from autofix.errors import retry_transient
from autofix.models import JobResult, RunConclusion, StepResult, WorkflowRun
from autofix.scm import SourceControl

logger = logging.getLogger("autofix.collector")

T = TypeVar("T")

MAX_LOG_CHARS = 20_000

_EXIT_CODE = re.compile(r"Process completed with exit code (\d+)")
_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z ?", re.MULTILINE)


def parse_exit_code(log: str) -> int | None:
    """Return the last exit code the runner reported in a job log."""
    codes = _EXIT_CODE.findall(log)
    return int(codes[-1]) if codes else None


def bound_log(log: str, max_chars: int = MAX_LOG_CHARS) -> str:
    """Strip runner timestamps and keep only the tail of the log."""
    cleaned = _TIMESTAMP.sub("", log)
    return cleaned[-max_chars:] if len(cleaned) > max_chars else cleaned


class FailureCollector:
    def __init__(
        self,
        scm: SourceControl,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_factor: float = 2.0,
        max_log_chars: int = MAX_LOG_CHARS,
    ):
        self.scm = scm
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.max_log_chars = max_log_chars

    def collect(self, repository: str, run_id: int, cancel: threading.Event | None = None) -> WorkflowRun:
        """Fetch run metadata and failed-job logs.

        Raises NotFound / PermissionDenied immediately, TransientFetchError once
        retries are exhausted, RunCancelled if cancelled during a backoff wait.
        """
        meta = self._with_retry(lambda: self.scm.fetch_run(repository, run_id), "fetch_run", cancel)

        jobs_meta = meta.get("jobs") or []
        has_failed = any(j.get("conclusion") in ("failure", "timed_out") for j in jobs_meta)
        logs: dict[str, str] = {}
        if has_failed or not jobs_meta:
            logs = self._with_retry(lambda: self.scm.fetch_logs(repository, run_id), "fetch_logs", cancel)

        run = self._normalize(repository, run_id, meta, logs)
        logger.info(
            f"Collected run {repository}#{run_id}: conclusion={run.conclusion.value}, "
            f"{len(run.failed_jobs)}/{len(run.jobs)} jobs failed"
        )
        return run

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _with_retry(self, fn: Callable[[], T], what: str, cancel: threading.Event | None) -> T:
        return retry_transient(
            fn,
            what,
            cancel,
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_factor=self.backoff_factor,
        )

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _normalize(self, repository: str, run_id: int, meta: dict[str, Any], logs: dict[str, str]) -> WorkflowRun:
        jobs: list[JobResult] = []
        for j in meta.get("jobs") or []:
            name = j.get("name", "")
            raw_log = logs.get(name, "") if j.get("conclusion") in ("failure", "timed_out") else ""
            jobs.append(
                JobResult(
                    id=j.get("id") or 0,
                    name=name,
                    conclusion=j.get("conclusion") or "",
                    steps=tuple(
                        StepResult(
                            name=s.get("name", ""),
                            number=s.get("number") or 0,
                            conclusion=s.get("conclusion") or "",
                        )
                        for s in j.get("steps") or []
                    ),
                    log=bound_log(raw_log, self.max_log_chars),
                    exit_code=parse_exit_code(raw_log),
                )
            )

        # Logs for jobs the metadata did not list (e.g. a bare log archive)
        listed = {j.name for j in jobs}
        for name, raw_log in logs.items():
            if name not in listed:
                jobs.append(
                    JobResult(
                        name=name,
                        conclusion="failure",
                        log=bound_log(raw_log, self.max_log_chars),
                        exit_code=parse_exit_code(raw_log),
                    )
                )

        try:
            conclusion = RunConclusion(meta.get("conclusion") or "unknown")
        except ValueError:
            conclusion = RunConclusion.UNKNOWN

        created = meta.get("created_at")
        return WorkflowRun(
            id=run_id,
            repository=repository,
            name=meta.get("name") or "",
            event=meta.get("event") or "",
            branch=meta.get("head_branch") or "",
            commit_sha=meta.get("head_sha") or "",
            url=meta.get("html_url") or "",
            conclusion=conclusion,
            jobs=tuple(jobs),
            created_at=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
        )
