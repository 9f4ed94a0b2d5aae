"""Run coordinator: one state machine per failing run, plus admission, worker pool and the attempt registry."""

from __future__ import annotations

import logging
import queue
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from autofix.classifier import FailureClassifier
from autofix.collector import FailureCollector
from autofix.config import RemediationPolicy
from autofix.errors import (
    AllProvidersExhausted,
    NotFound,
    PermissionDenied,
    PublishConflict,
    RunCancelled,
    TransientFetchError,
    check_cancelled,
)
from autofix.fixgen import ReadFile
from autofix.models import (
    AttemptState,
    Phase,
    PullRequestRecord,
    RepoSnapshot,
    RunConclusion,
    RunOutcome,
    SubmitResult,
    SubmitStatus,
    ValidationReport,
    WorkflowRun,
)
from autofix.orchestrator import ProviderOrchestrator
from autofix.publisher import PullRequestPublisher
from autofix.sandbox import ValidationSandbox

logger = logging.getLogger("autofix.coordinator")

_REPOSITORY = re.compile(r"^[\w.-]+/[\w.-]+$")
_POLL_SECONDS = 0.5
MAX_KEPT_OUTCOMES = 1000


# ---------------------------------------------------------------------------
# Attempt registry
# ---------------------------------------------------------------------------


class AttemptRegistry:
    """The only shared mutable state: at most one AttemptState per (repository, run id)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[tuple[str, int], AttemptState] = {}

    def admit(self, repository: str, run_id: int) -> AttemptState | None:
        """Atomic check-and-insert. Returns None if an attempt is already in flight."""
        key = (repository, run_id)
        with self._lock:
            if key in self._states:
                return None
            state = AttemptState(repository=repository, run_id=run_id)
            self._states[key] = state
            return state

    def release(self, state: AttemptState) -> None:
        with self._lock:
            if self._states.get(state.key) is state:
                del self._states[state.key]

    def get(self, repository: str, run_id: int) -> AttemptState | None:
        with self._lock:
            return self._states.get((repository, run_id))

    def snapshot(self) -> list[AttemptState]:
        with self._lock:
            return list(self._states.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


@dataclass
class Components:
    """Everything a coordinator composes. Shared between coordinators; none of it holds per-run state."""

    collector: FailureCollector
    classifier: FailureClassifier
    orchestrator: ProviderOrchestrator
    sandbox: ValidationSandbox
    publisher: PullRequestPublisher
    read_file_factory: Callable[[WorkflowRun], ReadFile]
    snapshot_factory: Callable[[WorkflowRun], RepoSnapshot]


class RunCoordinator:
    """Collecting -> Classifying -> Proposing -> Validating -> (Refining -> Proposing)* -> Publishing -> terminal."""

    def __init__(
        self,
        state: AttemptState,
        components: Components,
        policy: RemediationPolicy,
        registry: AttemptRegistry,
        slots: threading.Semaphore,
        on_terminal: Callable[[RunOutcome], None] | None = None,
    ):
        self.state = state
        self.components = components
        self.policy = policy
        self.registry = registry
        self.slots = slots
        self.on_terminal = on_terminal
        self.validations: list[ValidationReport] = []

    def run(self) -> RunOutcome:
        """Drive the run to a terminal phase. Never raises."""
        state = self.state
        try:
            outcome = self._drive()
        except RunCancelled:
            outcome = self._finish(Phase.ABORTED, "cancelled")
        except Exception as e:
            logger.exception(f"Unexpected error remediating {state.repository}#{state.run_id}")
            outcome = self._finish(Phase.ABORTED, f"unexpected error: {type(e).__name__}: {e}")

        try:
            if self.on_terminal is not None:
                self.on_terminal(outcome)
        except Exception:
            logger.exception(f"Terminal hook failed for {state.repository}#{state.run_id}")
        finally:
            self.registry.release(state)
        return outcome

    def _drive(self) -> RunOutcome:
        state = self.state
        c = self.components
        cancel = state.cancel_event

        # Collecting
        self._enter(Phase.COLLECTING)
        try:
            run = c.collector.collect(state.repository, state.run_id, cancel=cancel)
        except NotFound as e:
            return self._finish(Phase.ABORTED, f"run not found: {e}")
        except PermissionDenied as e:
            return self._finish(Phase.ABORTED, f"permission denied: {e}")
        except TransientFetchError as e:
            return self._finish(Phase.ABORTED, f"could not fetch run after retries: {e}")
        if run.conclusion == RunConclusion.SUCCESS:
            return self._finish(Phase.ABORTED, "run succeeded; nothing to remediate")

        # Classifying
        self._enter(Phase.CLASSIFYING)
        signals = c.classifier.classify(run)
        logger.info(
            f"{state.repository}#{state.run_id}: {len(signals)} signals "
            f"({', '.join(sorted({s.category.value for s in signals}))})"
        )

        read_file = c.read_file_factory(run)
        snapshot = c.snapshot_factory(run)
        feedback: ValidationReport | None = None
        previous = None

        while True:
            check_cancelled(cancel)
            with self._slot():
                self._enter(Phase.PROPOSING)
                try:
                    candidate = c.orchestrator.analyze_and_propose(
                        signals,
                        run,
                        state.cursor,
                        feedback=feedback,
                        previous=previous,
                        read_file=read_file,
                        cancel=cancel,
                    )
                except AllProvidersExhausted as e:
                    return self._finish(Phase.ABORTED, str(e))
                except TransientFetchError as e:
                    return self._finish(Phase.ABORTED, f"could not read source files after retries: {e}")
                except PermissionDenied as e:
                    return self._finish(Phase.ABORTED, f"permission denied reading source files: {e}")

                state.total_attempts += 1
                self._enter(Phase.VALIDATING)
                report = c.sandbox.validate(candidate, snapshot, cancel=cancel)
                self.validations.append(report)

            # A command may finish after cancellation was requested
            check_cancelled(cancel)
            if report.passed:
                break

            if state.total_attempts >= self.policy.max_total_attempts:
                return self._finish(
                    Phase.EXHAUSTED,
                    f"no passing fix after {state.total_attempts} attempt(s); "
                    f"last validation failed ({report.failure_kind.value}): {report.detail}",
                )

            self._enter(Phase.REFINING)
            feedback, previous = report, candidate
            if self.policy.refine_advances_provider:
                state.cursor.advance()

        # Publishing
        self._enter(Phase.PUBLISHING)
        try:
            record = c.publisher.publish(candidate, report, run, signals, cancel=cancel)
        except PublishConflict as e:
            return self._finish(Phase.ABORTED, f"publish conflict persisted after retry: {e}")
        except PermissionDenied as e:
            return self._finish(Phase.ABORTED, f"permission denied while publishing: {e}")
        except TransientFetchError as e:
            return self._finish(Phase.ABORTED, f"could not publish after retries: {e}")
        return self._finish(Phase.PUBLISHED, f"opened pull request #{record.number}", pull_request=record)

    @contextmanager
    def _slot(self) -> Iterator[None]:
        """Global cap on coordinators in Proposing/Validating. Blocks this worker, stays cancellable."""
        while not self.slots.acquire(timeout=_POLL_SECONDS):
            check_cancelled(self.state.cancel_event)
        try:
            yield
        finally:
            self.slots.release()

    def _enter(self, phase: Phase) -> None:
        logger.debug(f"{self.state.repository}#{self.state.run_id}: {self.state.phase.value} -> {phase.value}")
        self.state.phase = phase

    def _finish(self, phase: Phase, reason: str, pull_request: PullRequestRecord | None = None) -> RunOutcome:
        state = self.state
        state.phase = phase
        cursor = state.cursor
        root_cause = cursor.analyses[-1].root_cause if cursor.analyses else ""
        outcome = RunOutcome(
            repository=state.repository,
            run_id=state.run_id,
            phase=phase,
            reason=reason,
            root_cause=root_cause,
            providers_tried=cursor.providers_tried,
            attempts=list(cursor.attempts),
            analyses=list(cursor.analyses),
            validations=list(self.validations),
            pull_request=pull_request,
            total_attempts=state.total_attempts,
            duration_seconds=time.monotonic() - state.started_at,
        )
        outcome.summary = summarize(outcome)
        log = logger.info if phase == Phase.PUBLISHED else logger.warning
        log(f"{state.repository}#{state.run_id} ended {phase.value}: {reason}")
        return outcome


def summarize(outcome: RunOutcome) -> str:
    """Human-readable account of a terminal outcome, fit for a PR comment or an operator channel."""
    lines = [f"{outcome.repository}#{outcome.run_id}: {outcome.phase.value.upper()}. {outcome.reason}"]
    lines.append(f"Root cause: {outcome.root_cause or 'not determined'}")
    lines.append(f"Providers tried: {', '.join(outcome.providers_tried) or 'none'}")
    failed_calls = sum(1 for a in outcome.attempts if not a.ok)
    lines.append(
        f"Fix attempts: {outcome.total_attempts} validated, "
        f"{len(outcome.attempts)} provider call(s) ({failed_calls} failed)"
    )
    if outcome.validations:
        last = outcome.validations[-1]
        lines.append(f"Final validation: {last.verdict} ({last.failure_kind.value}) {last.detail}")
    if outcome.pull_request is not None:
        lines.append(f"Pull request: {outcome.pull_request.url or '#' + str(outcome.pull_request.number)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher:
    """Admission surface plus worker pool.

    ``submit`` never blocks on remediation work; outcomes are observed via
    ``status``/``outcome``/``wait`` or ``on_outcome`` callbacks.
    """

    def __init__(
        self,
        components: Components,
        policy: RemediationPolicy,
        worker_count: int = 4,
        queue_size: int = 100,
        registry: AttemptRegistry | None = None,
    ):
        self.components = components
        self.policy = policy
        self.worker_count = max(1, worker_count)
        self.registry = registry or AttemptRegistry()
        self.slots = threading.BoundedSemaphore(max(1, policy.max_concurrent_runs))
        self._queue: queue.Queue[AttemptState | None] = queue.Queue(maxsize=queue_size)
        self._outcomes: dict[tuple[str, int], RunOutcome] = {}
        self._cond = threading.Condition()
        self._callbacks: list[Callable[[RunOutcome], None]] = []
        self._workers: list[threading.Thread] = []
        self._closed = False

    # --- Admission ---

    def submit(self, repository: str, run_id: int) -> SubmitResult:
        def result(status: SubmitStatus, detail: str) -> SubmitResult:
            return SubmitResult(status=status, repository=repository, run_id=run_id, detail=detail)

        if not isinstance(repository, str) or not _REPOSITORY.match(repository):
            return result(SubmitStatus.REJECTED, f"invalid repository '{repository}' (expected owner/name)")
        if not isinstance(run_id, int) or isinstance(run_id, bool) or run_id <= 0:
            return result(SubmitStatus.REJECTED, f"invalid run id {run_id!r}")
        if self._closed:
            return result(SubmitStatus.REJECTED, "dispatcher is shut down")

        state = self.registry.admit(repository, run_id)
        if state is None:
            existing = self.registry.get(repository, run_id)
            phase = existing.phase.value if existing else "finishing"
            return result(SubmitStatus.DUPLICATE, f"attempt already in flight ({phase})")

        with self._cond:
            self._outcomes.pop(state.key, None)
        try:
            self._queue.put_nowait(state)
        except queue.Full:
            self.registry.release(state)
            return result(SubmitStatus.REJECTED, "queue is full")

        logger.info(f"Accepted {repository}#{run_id}")
        return result(SubmitStatus.ACCEPTED, "queued")

    # --- Observation ---

    def status(self, repository: str, run_id: int) -> Phase | None:
        state = self.registry.get(repository, run_id)
        if state is not None:
            return state.phase
        outcome = self.outcome(repository, run_id)
        return outcome.phase if outcome else None

    def outcome(self, repository: str, run_id: int) -> RunOutcome | None:
        with self._cond:
            return self._outcomes.get((repository, run_id))

    def wait(self, repository: str, run_id: int, timeout: float | None = None) -> RunOutcome | None:
        key = (repository, run_id)
        with self._cond:
            self._cond.wait_for(lambda: key in self._outcomes, timeout=timeout)
            return self._outcomes.get(key)

    def active(self) -> list[AttemptState]:
        return self.registry.snapshot()

    def cancel(self, repository: str, run_id: int) -> bool:
        state = self.registry.get(repository, run_id)
        if state is None:
            return False
        state.cancel_event.set()
        logger.info(f"Cancellation requested for {repository}#{run_id}")
        return True

    def on_outcome(self, callback: Callable[[RunOutcome], None]) -> None:
        self._callbacks.append(callback)

    # --- Lifecycle ---

    def start(self) -> None:
        if self._workers:
            return
        for i in range(self.worker_count):
            t = threading.Thread(target=self._worker, name=f"autofix-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        logger.info(f"Dispatcher started with {self.worker_count} workers, {self.policy.max_concurrent_runs} slots")

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        self._closed = True
        if cancel_running:
            for state in self.registry.snapshot():
                state.cancel_event.set()
        for _ in self._workers:
            self._queue.put(None)
        if wait:
            for t in self._workers:
                t.join()
        self._workers = []

    def _worker(self) -> None:
        while True:
            state = self._queue.get()
            try:
                if state is None:
                    return
                RunCoordinator(
                    state,
                    self.components,
                    self.policy,
                    self.registry,
                    self.slots,
                    on_terminal=self._record,
                ).run()
            finally:
                self._queue.task_done()

    def _record(self, outcome: RunOutcome) -> None:
        key = (outcome.repository, outcome.run_id)
        with self._cond:
            self._outcomes[key] = outcome
            while len(self._outcomes) > MAX_KEPT_OUTCOMES:
                self._outcomes.pop(next(iter(self._outcomes)))
            # Release before anyone can observe the outcome, so a re-trigger is never a duplicate
            state = self.registry.get(*key)
            if state is not None:
                self.registry.release(state)
            self._cond.notify_all()
        for callback in self._callbacks:
            try:
                callback(outcome)
            except Exception:
                logger.exception(f"Outcome callback failed for {outcome.repository}#{outcome.run_id}")
