"""Shared test fixtures."""

from __future__ import annotations

import copy
import json
import threading
import time

import pytest

from autofix.config import Settings
from autofix.db import Database
from autofix.errors import NotFound, ProviderError, PublishConflict
from autofix.llm import LLMResponse
from autofix.models import (
    AnalysisResult,
    EditKind,
    FileEdit,
    FixCandidate,
    JobResult,
    ProposedEdit,
    RepoSnapshot,
    RunConclusion,
    StepResult,
    WorkflowRun,
)
from autofix.providers import Provider
from autofix.sandbox import CommandResult, SandboxRuntime, WorkspaceHandle
from autofix.scm import SourceControl

REPO = "acme/widgets"
FAILING_LOG = (
    "2024-05-01T10:00:00.0000000Z Run python -m pytest\n"
    "2024-05-01T10:00:01.0000000Z src/app.py:3: error: Incompatible return value type [return-value]\n"
    "2024-05-01T10:00:02.0000000Z ##[error]Process completed with exit code 1.\n"
)
APP_SOURCE = "def answer():\n    return 41\n"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSCM(SourceControl):
    """In-memory source control. ``errors`` maps a method name to exceptions raised in order.

    ``files`` is the tree at every ref unless ``files_at`` overrides a ref.
    """

    def __init__(self):
        self.runs: dict[int, dict] = {}
        self.logs: dict[int, dict[str, str]] = {}
        self.files: dict[str, str] = {"src/app.py": APP_SOURCE}
        self.files_at: dict[str, dict[str, str]] = {}
        self.branches: dict[str, str] = {"main": "base-sha"}
        self.commits: list[dict] = []
        self.pull_requests: list[dict] = []
        self.errors: dict[str, list[Exception]] = {}
        self.calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def add_failed_run(self, run_id: int, log: str = FAILING_LOG, job: str = "test") -> None:
        self.runs[run_id] = {
            "id": run_id,
            "name": "CI",
            "event": "push",
            "head_branch": "main",
            "head_sha": "abc1234def",
            "html_url": f"https://github.com/{REPO}/actions/runs/{run_id}",
            "conclusion": "failure",
            "created_at": "2024-05-01T10:00:00Z",
            "jobs": [
                {
                    "id": run_id * 10,
                    "name": job,
                    "conclusion": "failure",
                    "steps": [
                        {"name": "Checkout", "number": 1, "conclusion": "success"},
                        {"name": "Run tests", "number": 2, "conclusion": "failure"},
                    ],
                },
                {"id": run_id * 10 + 1, "name": "lint", "conclusion": "success", "steps": []},
            ],
        }
        self.logs[run_id] = {job: log}

    def _enter(self, name: str) -> None:
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1
            pending = self.errors.get(name)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def fetch_run(self, repository, run_id):
        self._enter("fetch_run")
        if run_id not in self.runs:
            raise NotFound(f"run {run_id} not found")
        return copy.deepcopy(self.runs[run_id])

    def fetch_logs(self, repository, run_id):
        self._enter("fetch_logs")
        return dict(self.logs.get(run_id, {}))

    def fetch_file(self, repository, path, ref):
        self._enter("fetch_file")
        return self.files_at.get(ref, self.files).get(path)

    def list_failed_runs(self, repository, limit=10):
        self._enter("list_failed_runs")
        return [copy.deepcopy(r) for r in self.runs.values() if r.get("conclusion") == "failure"][:limit]

    def get_branch_head(self, repository, branch):
        self._enter("get_branch_head")
        if branch not in self.branches:
            raise NotFound(f"branch {branch} not found")
        return self.branches[branch]

    def create_branch(self, repository, branch, sha):
        self._enter("create_branch")
        with self._lock:
            if branch in self.branches:
                raise PublishConflict(f"branch {branch} already exists")
            self.branches[branch] = sha

    def commit(self, repository, branch, parent_sha, edits, message):
        self._enter("commit")
        with self._lock:
            sha = f"commit-{len(self.commits) + 1}"
            self.commits.append({"branch": branch, "parent": parent_sha, "edits": edits, "message": message})
            self.branches[branch] = sha
        return sha

    def open_pull_request(self, repository, head, base, title, body, labels=None, draft=False):
        self._enter("open_pull_request")
        with self._lock:
            number = len(self.pull_requests) + 1
            self.pull_requests.append(
                {"number": number, "head": head, "base": base, "title": title, "body": body, "labels": labels}
            )
        return {"number": number, "url": f"https://github.com/{repository}/pull/{number}"}


class FakeProvider(Provider):
    """Scripted backend: each call pops the next response (text or exception), then repeats ``then``."""

    def __init__(self, name: str, responses=None, then=None, delay: float = 0.0):
        super().__init__(model=f"{name}-model")
        self.name = name
        self.responses = list(responses or [])
        self.then = then if then is not None else ProviderError(name, "no scripted response")
        self.delay = delay
        self.calls = 0
        self.prompts: list[str] = []
        self._lock = threading.Lock()

    def complete(self, system_prompt, user_message):
        with self._lock:
            self.calls += 1
            self.prompts.append(user_message)
            item = self.responses.pop(0) if self.responses else self.then
        if self.delay:
            time.sleep(self.delay)
        if isinstance(item, Exception):
            raise item
        return LLMResponse(text=item, input_tokens=100, output_tokens=50, model=self.model)


class FakeRuntime(SandboxRuntime):
    """Sandbox runtime with scripted command results.

    ``handler(edits, command)`` decides each CommandResult; by default every command succeeds.
    """

    def __init__(self, files=("pyproject.toml",), handler=None):
        self.files = set(files)
        self.handler = handler or (lambda edits, command: CommandResult(output="5 passed in 0.10s", exit_code=0))
        self.acquired: list[str] = []
        self.released: list[str] = []
        self.commands: list[str] = []
        self.applied: dict[str, list[FileEdit]] = {}
        self.acquire_error: Exception | None = None
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def acquire_workspace(self, snapshot: RepoSnapshot) -> WorkspaceHandle:
        if self.acquire_error is not None:
            raise self.acquire_error
        with self._lock:
            handle = WorkspaceHandle(
                id=f"ws-{len(self.acquired) + 1}", snapshot=snapshot, commit_sha=snapshot.commit_sha
            )
            self.acquired.append(handle.id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        return handle

    def apply_edits(self, handle, edits):
        self.applied[handle.id] = list(edits)

    def run_command(self, handle, command, timeout, env=None, cancel=None):
        with self._lock:
            self.commands.append(command)
        return self.handler(self.applied.get(handle.id, []), command)

    def exists(self, handle, path):
        return path in self.files

    def release(self, handle):
        with self._lock:
            self.released.append(handle.id)
            self.active -= 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path):
    """Settings with test values - no real API keys."""
    return Settings(
        providers=["anthropic", "openai"],
        anthropic_api_key="sk-ant-test-key-1234567890",
        openai_api_key="sk-openai-test",
        provider_backoff_seconds=0.0,
        collector_backoff_seconds=0.0,
        db_path=tmp_path / "autofix.db",
    )


@pytest.fixture
def test_db(tmp_path):
    """Fresh SQLite DB for each test."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def mock_llm_response():
    """Factory for creating LLMResponse objects."""

    def _make(text: str, input_tokens: int = 100, output_tokens: int = 200, thinking: str = ""):
        return LLMResponse(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model="claude-sonnet-4-5-20250929",
            thinking=thinking,
        )

    return _make


@pytest.fixture
def proposal():
    """Factory for the JSON a backend returns."""

    def _make(
        path: str = "src/app.py",
        search: str | None = "return 41",
        replace: str | None = "return 42",
        root_cause: str = "answer() returns the wrong constant",
        confidence: float = 0.9,
        **extra,
    ) -> str:
        edit = {"path": path, "kind": extra.pop("kind", "modify"), "search": search, "replace": replace}
        edit.update(extra)
        return json.dumps(
            {
                "root_cause": root_cause,
                "confidence": confidence,
                "remediation_steps": ["Return the expected constant"],
                "rationale": "The test expects 42.",
                "edits": [edit],
            }
        )

    return _make


@pytest.fixture
def fake_scm():
    scm = FakeSCM()
    scm.add_failed_run(101)
    return scm


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def make_runtime():
    return FakeRuntime


@pytest.fixture
def make_run():
    """Factory for a normalized WorkflowRun with one failing job."""

    def _make(log: str = FAILING_LOG, run_id: int = 101, conclusion: RunConclusion = RunConclusion.FAILURE, **kw):
        job = JobResult(
            id=1,
            name=kw.pop("job_name", "test"),
            conclusion="failure",
            steps=(StepResult(name="Run tests", number=2, conclusion="failure"),),
            log=log,
            exit_code=kw.pop("exit_code", 1),
        )
        return WorkflowRun(
            id=run_id,
            repository=REPO,
            name="CI",
            branch="main",
            commit_sha="abc1234def",
            url=f"https://github.com/{REPO}/actions/runs/{run_id}",
            conclusion=conclusion,
            jobs=(job,),
            **kw,
        )

    return _make


@pytest.fixture
def make_candidate():
    """Factory for a FixCandidate modifying one file."""

    def _make(provider: str = "anthropic", path: str = "src/app.py", content: str = "def answer():\n    return 42\n"):
        analysis = AnalysisResult(
            provider=provider,
            model=f"{provider}-model",
            root_cause="answer() returns the wrong constant",
            confidence=0.9,
            remediation_steps=["Return 42"],
            rationale="The test expects 42.",
            proposed_edits=[ProposedEdit(path=path, content=content)],
        )
        edit = FileEdit(path=path, kind=EditKind.MODIFY, content=content, diff=f"--- a/{path}\n+++ b/{path}\n")
        return FixCandidate(edits=[edit], rationale=analysis.rationale, analysis=analysis)

    return _make
