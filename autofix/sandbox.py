"""Validation sandbox: apply a candidate to a disposable checkout, build it, test it, report."""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from autofix.errors import RunCancelled, SandboxError, check_cancelled
from autofix.git_utils import clone_snapshot, head_sha, is_path_safe
from autofix.models import EditKind, FileEdit, FixCandidate, RepoSnapshot, ValidationFailure, ValidationReport

logger = logging.getLogger("autofix.sandbox")

MAX_REPORT_LOG_CHARS = 10_000
_POLL_SECONDS = 0.5


@dataclass
class WorkspaceHandle:
    id: str
    snapshot: RepoSnapshot
    root: Path | None = None
    commit_sha: str = ""


@dataclass
class CommandResult:
    output: str
    exit_code: int
    timed_out: bool = False
    duration_seconds: float = 0.0


@dataclass
class ProjectCommands:
    kind: str = "unknown"
    build: str = ""
    test: str = ""
    coverage: str = ""


# ---------------------------------------------------------------------------
# Runtime collaborator
# ---------------------------------------------------------------------------


class SandboxRuntime(ABC):
    """Isolated, disposable workspaces. Every acquired handle must be released."""

    @abstractmethod
    def acquire_workspace(self, snapshot: RepoSnapshot) -> WorkspaceHandle: ...

    @abstractmethod
    def apply_edits(self, handle: WorkspaceHandle, edits: list[FileEdit]) -> None: ...

    @abstractmethod
    def run_command(
        self,
        handle: WorkspaceHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """Run `command` in the workspace. Raises RunCancelled, killing the command, once `cancel` is set."""

    @abstractmethod
    def exists(self, handle: WorkspaceHandle, path: str) -> bool: ...

    @abstractmethod
    def release(self, handle: WorkspaceHandle) -> None: ...


class LocalSandboxRuntime(SandboxRuntime):
    """A fresh git clone in a temporary directory per validation."""

    def __init__(self, base_dir: Path | None = None, clone_timeout: float = 300):
        self.base_dir = base_dir
        self.clone_timeout = clone_timeout

    def acquire_workspace(self, snapshot: RepoSnapshot) -> WorkspaceHandle:
        if self.base_dir is not None:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        tmp = Path(tempfile.mkdtemp(prefix="autofix-", dir=self.base_dir))
        root = tmp / "repo"
        try:
            clone_snapshot(snapshot.source, root, snapshot.commit_sha, timeout=self.clone_timeout)
            sha = head_sha(root)
        except (subprocess.SubprocessError, OSError) as e:
            shutil.rmtree(tmp, ignore_errors=True)
            stderr = getattr(e, "stderr", "") or ""
            raise SandboxError(f"could not check out {snapshot.repository}@{snapshot.commit_sha}: {e} {stderr}") from e
        return WorkspaceHandle(id=tmp.name, snapshot=snapshot, root=root, commit_sha=sha)

    def apply_edits(self, handle: WorkspaceHandle, edits: list[FileEdit]) -> None:
        root = self._root(handle)
        for edit in edits:
            if not is_path_safe(root, edit.path):
                raise SandboxError(f"refusing to write outside the workspace: {edit.path}")
            target = root / edit.path
            if edit.kind == EditKind.DELETE:
                target.unlink(missing_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(edit.content or "", encoding="utf-8")
        logger.debug("Applied %d edits in %s", len(edits), handle.id)

    def run_command(
        self,
        handle: WorkspaceHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        root = self._root(handle)
        started = time.monotonic()
        deadline = started + max(timeout, 0.001)
        # Own process group, so a timeout kills the whole tree and not just the shell
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(root),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
        # communicate() may be called again after TimeoutExpired; polling keeps the command cancellable
        while True:
            try:
                output, _ = proc.communicate(timeout=max(min(deadline - time.monotonic(), _POLL_SECONDS), 0.001))
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    self._kill(proc)
                    proc.communicate()
                    logger.info(f"Killed '{command}' in {handle.id}: run cancelled")
                    raise RunCancelled("cancelled") from None
                if time.monotonic() >= deadline:
                    self._kill(proc)
                    output, _ = proc.communicate()
                    return CommandResult(
                        output=output or "",
                        exit_code=-1,
                        timed_out=True,
                        duration_seconds=time.monotonic() - started,
                    )
        return CommandResult(
            output=output or "",
            exit_code=proc.returncode,
            duration_seconds=time.monotonic() - started,
        )

    def exists(self, handle: WorkspaceHandle, path: str) -> bool:
        root = self._root(handle)
        return is_path_safe(root, path) and (root / path).exists()

    def release(self, handle: WorkspaceHandle) -> None:
        if handle.root is not None:
            shutil.rmtree(handle.root.parent, ignore_errors=True)
            logger.debug("Released workspace %s", handle.id)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    @staticmethod
    def _root(handle: WorkspaceHandle) -> Path:
        if handle.root is None:
            raise SandboxError(f"workspace {handle.id} has no checkout")
        return handle.root


# ---------------------------------------------------------------------------
# Project detection
# ---------------------------------------------------------------------------


def detect_commands(runtime: SandboxRuntime, handle: WorkspaceHandle) -> ProjectCommands:
    """Guess build/test/coverage commands from the files at the repository root."""

    def has(path: str) -> bool:
        return runtime.exists(handle, path)

    if has("pyproject.toml") or has("setup.py"):
        return ProjectCommands(
            "python", "python -m pip install -q -e .", "python -m pytest -q", "python -m pytest -q --cov=."
        )
    if has("requirements.txt"):
        return ProjectCommands(
            "python",
            "python -m pip install -q -r requirements.txt",
            "python -m pytest -q",
            "python -m pytest -q --cov=.",
        )
    if has("package.json"):
        install = "npm ci" if has("package-lock.json") else "npm install"
        return ProjectCommands("nodejs", install, "npm test", "npm test -- --coverage")
    if has("go.mod"):
        return ProjectCommands("golang", "go build ./...", "go test -v ./...", "go test -v -cover ./...")
    if has("Cargo.toml"):
        return ProjectCommands("rust", "cargo build", "cargo test")
    if has("pom.xml"):
        return ProjectCommands("maven", "mvn -B -q compile", "mvn -B test")
    if has("composer.json"):
        return ProjectCommands("php", "composer install --no-interaction", "vendor/bin/phpunit")
    if has("Makefile"):
        return ProjectCommands("generic", "make", "make test")
    return ProjectCommands()


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

_PYTEST_SUMMARY = re.compile(r"^.*\b\d+ (?:passed|failed|error|errors)\b.*\bin [\d.]+s\b.*$", re.MULTILINE)
_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|skipped|errors?)")
_JEST_SUMMARY = re.compile(r"^Tests:\s+(.*\d+ total)\s*$", re.MULTILINE)
_JEST_COUNT = re.compile(r"(\d+) (passed|failed|skipped|todo)")
_CARGO_SUMMARY = re.compile(r"test result: \w+\. (\d+) passed; (\d+) failed; (\d+) ignored")
_JUNIT_SUMMARY = re.compile(r"Tests run: (\d+), Failures: (\d+), Errors: (\d+), Skipped: (\d+)")
_GO_RESULT = re.compile(r"^\s*--- (PASS|FAIL|SKIP):", re.MULTILINE)

_COVERAGE_PY = re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)
_COVERAGE_GO = re.compile(r"coverage: (\d+(?:\.\d+)?)% of statements")
_COVERAGE_JEST = re.compile(r"All files\s*\|\s*(\d+(?:\.\d+)?)")


def parse_test_counts(output: str) -> tuple[int, int, int]:
    """Return (passed, failed, skipped) from pytest, jest, cargo, JUnit or go test output."""
    summaries = _PYTEST_SUMMARY.findall(output)
    if summaries:
        counts = {"passed": 0, "failed": 0, "skipped": 0}
        for n, kind in _PYTEST_COUNT.findall(summaries[-1]):
            counts["failed" if kind.startswith("error") else kind] += int(n)
        return counts["passed"], counts["failed"], counts["skipped"]

    jest = _JEST_SUMMARY.findall(output)
    if jest:
        counts = {"passed": 0, "failed": 0, "skipped": 0, "todo": 0}
        for n, kind in _JEST_COUNT.findall(jest[-1]):
            counts[kind] += int(n)
        return counts["passed"], counts["failed"], counts["skipped"] + counts["todo"]

    cargo = _CARGO_SUMMARY.findall(output)
    if cargo:
        return (
            sum(int(p) for p, _, _ in cargo),
            sum(int(f) for _, f, _ in cargo),
            sum(int(i) for _, _, i in cargo),
        )

    junit = _JUNIT_SUMMARY.findall(output)
    if junit:
        run, failures, errors, skipped = (int(x) for x in junit[-1])
        return run - failures - errors - skipped, failures + errors, skipped

    results = _GO_RESULT.findall(output)
    return results.count("PASS"), results.count("FAIL"), results.count("SKIP")


def parse_coverage(output: str) -> float | None:
    """Return total coverage percent, or None when the output carries none."""
    py = _COVERAGE_PY.findall(output)
    if py:
        return float(py[-1])
    jest = _COVERAGE_JEST.findall(output)
    if jest:
        return float(jest[-1])
    go = [float(x) for x in _COVERAGE_GO.findall(output)]
    if go:
        return round(sum(go) / len(go), 1)
    return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class _Run:
    started: float = field(default_factory=time.monotonic)
    log: list[str] = field(default_factory=list)

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def tail(self) -> str:
        text = "\n".join(self.log)
        return text[-MAX_REPORT_LOG_CHARS:]


class ValidationSandbox:
    def __init__(
        self,
        runtime: SandboxRuntime,
        timeout_seconds: float = 900.0,
        build_command: str = "",
        test_command: str = "",
        coverage_command: str = "",
        min_coverage: float = 0.0,
    ):
        self.runtime = runtime
        self.timeout_seconds = timeout_seconds
        self.build_command = build_command
        self.test_command = test_command
        self.coverage_command = coverage_command
        self.min_coverage = min_coverage

    @contextmanager
    def workspace(self, snapshot: RepoSnapshot) -> Iterator[WorkspaceHandle]:
        """Scoped acquisition: the workspace is released on every exit path."""
        handle = self.runtime.acquire_workspace(snapshot)
        try:
            yield handle
        finally:
            try:
                self.runtime.release(handle)
            except Exception as e:
                logger.warning(f"Failed to release workspace {handle.id}: {e}")

    def validate(
        self,
        candidate: FixCandidate,
        snapshot: RepoSnapshot,
        cancel: threading.Event | None = None,
    ) -> ValidationReport:
        """Build and test ``candidate`` against ``snapshot``.

        Never raises for infrastructure trouble: that becomes a failing report
        with failure_kind=infrastructure. Only cancellation propagates.
        """
        state = _Run()
        try:
            check_cancelled(cancel)
            with self.workspace(snapshot) as handle:
                self.runtime.apply_edits(handle, candidate.edits)
                report = self._run_checks(candidate, handle, state, cancel)
        except RunCancelled:
            raise
        except Exception as e:
            logger.error(f"Sandbox failure validating {candidate.id}: {type(e).__name__}: {e}")
            report = self._report(
                candidate, state, ValidationFailure.INFRASTRUCTURE, f"sandbox error: {type(e).__name__}: {e}"
            )

        logger.info(
            f"Validated {candidate.id}: {report.verdict} ({report.failure_kind.value}) "
            f"{report.tests_passed} passed / {report.tests_failed} failed in {report.duration_seconds:.1f}s"
        )
        return report

    def commands_for(self, handle: WorkspaceHandle) -> ProjectCommands:
        detected = detect_commands(self.runtime, handle)
        return ProjectCommands(
            kind=detected.kind,
            build=self.build_command or detected.build,
            test=self.test_command or detected.test,
            coverage=self.coverage_command or (detected.coverage if self.min_coverage > 0 else ""),
        )

    def _run_checks(
        self,
        candidate: FixCandidate,
        handle: WorkspaceHandle,
        state: _Run,
        cancel: threading.Event | None,
    ) -> ValidationReport:
        commands = self.commands_for(handle)
        test_command = commands.coverage or commands.test
        if not test_command:
            return self._report(
                candidate, state, ValidationFailure.INFRASTRUCTURE, "could not determine how to test this project"
            )

        for stage, command in (("build", commands.build), ("test", test_command)):
            if not command:
                continue
            check_cancelled(cancel)
            remaining = self.timeout_seconds - state.elapsed()
            if remaining <= 0:
                return self._timeout_report(candidate, state, stage)

            result = self.runtime.run_command(handle, command, timeout=remaining, cancel=cancel)
            state.log.append(f"$ {command}\n{result.output}")

            if result.timed_out:
                return self._timeout_report(candidate, state, stage)

            if stage == "build" and result.exit_code != 0:
                return self._report(
                    candidate, state, ValidationFailure.BUILD, f"build command exited with {result.exit_code}"
                )

            if stage == "test":
                passed, failed, skipped = parse_test_counts(result.output)
                coverage = parse_coverage(result.output)
                counts = {"tests_passed": passed, "tests_failed": failed, "tests_skipped": skipped}

                if result.exit_code != 0:
                    detail = f"test command exited with {result.exit_code}"
                    if failed:
                        detail += f" ({failed} failing)"
                    return self._report(candidate, state, ValidationFailure.TEST, detail, coverage=coverage, **counts)

                if self.min_coverage > 0 and (coverage is None or coverage < self.min_coverage):
                    shown = "unknown" if coverage is None else f"{coverage:.1f}%"
                    return self._report(
                        candidate,
                        state,
                        ValidationFailure.COVERAGE,
                        f"coverage {shown} below required {self.min_coverage:.1f}%",
                        coverage=coverage,
                        **counts,
                    )

                return self._report(
                    candidate, state, ValidationFailure.NONE, "build and tests passed", coverage=coverage, **counts
                )

        raise SandboxError("validation finished without running tests")

    def _timeout_report(self, candidate: FixCandidate, state: _Run, stage: str) -> ValidationReport:
        return self._report(
            candidate,
            state,
            ValidationFailure.TIMEOUT,
            f"{stage} did not finish within the {self.timeout_seconds:.0f}s validation budget",
        )

    def _report(
        self,
        candidate: FixCandidate,
        state: _Run,
        kind: ValidationFailure,
        detail: str,
        **metrics,
    ) -> ValidationReport:
        return ValidationReport(
            candidate_id=candidate.id,
            passed=kind == ValidationFailure.NONE,
            failure_kind=kind,
            detail=detail,
            log=state.tail(),
            duration_seconds=state.elapsed(),
            **metrics,
        )
