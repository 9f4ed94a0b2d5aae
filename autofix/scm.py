"""Source-control collaborator: read runs and logs, write branches, commits and pull requests."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from typing import Any

from autofix.errors import (
    AutofixError,
    NotFound,
    PermissionDenied,
    PublishConflict,
    TransientFetchError,
)
from autofix.models import EditKind, FileEdit

logger = logging.getLogger("autofix.scm")


class SourceControl(ABC):
    """Capability calls returning structured results or a typed failure.

    Implementations never retry; backoff is the caller's job.
    """

    @abstractmethod
    def fetch_run(self, repository: str, run_id: int) -> dict[str, Any]:
        """Run metadata with a ``jobs`` list (each job with ``steps``)."""
        ...

    @abstractmethod
    def fetch_logs(self, repository: str, run_id: int) -> dict[str, str]:
        """Log text of each failed job, keyed by job name."""
        ...

    @abstractmethod
    def fetch_file(self, repository: str, path: str, ref: str) -> str | None:
        """File content at ``ref``, or None when the file does not exist."""
        ...

    @abstractmethod
    def list_failed_runs(self, repository: str, limit: int = 10) -> list[dict[str, Any]]: ...

    @abstractmethod
    def get_branch_head(self, repository: str, branch: str) -> str: ...

    @abstractmethod
    def create_branch(self, repository: str, branch: str, sha: str) -> None: ...

    @abstractmethod
    def commit(self, repository: str, branch: str, parent_sha: str, edits: list[FileEdit], message: str) -> str:
        """Commit ``edits`` on top of ``parent_sha``, move ``branch`` to it, return the new SHA."""
        ...

    @abstractmethod
    def open_pull_request(
        self,
        repository: str,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        draft: bool = False,
    ) -> dict[str, Any]:
        """Return at least ``number`` and ``url``."""
        ...


# ---------------------------------------------------------------------------
# GitHub via the gh CLI
# ---------------------------------------------------------------------------

_HTTP_STATUS = re.compile(r"HTTP (\d{3})")


def map_gh_error(output: str, what: str) -> AutofixError:
    """Translate a failed ``gh api`` invocation into the error taxonomy."""
    match = _HTTP_STATUS.search(output)
    status = int(match.group(1)) if match else None
    lower = output.lower()
    detail = f"{what}: {output.strip()[:300]}"

    if status == 404:
        return NotFound(detail)
    if status in (401, 403):
        if "rate limit" in lower:
            return TransientFetchError(detail)
        return PermissionDenied(detail)
    if status == 409 or (status == 422 and "already exists" in lower):
        return PublishConflict(detail)
    if status == 429 or (status is not None and status >= 500):
        return TransientFetchError(detail)
    if status is None:
        # No HTTP status: network trouble, DNS, proxy, etc.
        return TransientFetchError(detail)
    return AutofixError(detail)


class GitHubCLIClient(SourceControl):
    """Talks to the GitHub REST API through ``gh api`` (auth comes from gh itself)."""

    def __init__(self, timeout: float = 60.0, gh_bin: str = "gh"):
        self.timeout = timeout
        self.gh_bin = gh_bin

    def _api(
        self,
        path: str,
        method: str = "GET",
        payload: dict[str, Any] | None = None,
        raw: bool = False,
    ) -> Any:
        cmd = [self.gh_bin, "api", "--method", method, path]
        if raw:
            cmd += ["-H", "Accept: application/vnd.github.raw"]
        if payload is not None:
            cmd += ["--input", "-"]

        logger.debug("gh api %s %s", method, path)
        try:
            result = subprocess.run(
                cmd,
                input=json.dumps(payload) if payload is not None else None,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientFetchError(f"{method} {path}: timed out after {self.timeout}s") from e
        except OSError as e:
            raise TransientFetchError(f"gh CLI not available: {e}") from e

        if result.returncode != 0:
            raise map_gh_error(result.stderr + result.stdout, f"{method} {path}")

        if raw:
            return result.stdout
        try:
            return json.loads(result.stdout) if result.stdout.strip() else {}
        except json.JSONDecodeError as e:
            raise TransientFetchError(f"{method} {path}: invalid JSON from gh: {e}") from e

    # --- Reads ---

    def fetch_run(self, repository: str, run_id: int) -> dict[str, Any]:
        run = self._api(f"repos/{repository}/actions/runs/{run_id}")
        jobs = self._api(f"repos/{repository}/actions/runs/{run_id}/jobs?per_page=100")
        run["jobs"] = jobs.get("jobs", [])
        return run

    def fetch_logs(self, repository: str, run_id: int) -> dict[str, str]:
        jobs = self._api(f"repos/{repository}/actions/runs/{run_id}/jobs?per_page=100").get("jobs", [])
        logs: dict[str, str] = {}
        for job in jobs:
            if job.get("conclusion") not in ("failure", "timed_out"):
                continue
            try:
                logs[job["name"]] = self._api(f"repos/{repository}/actions/jobs/{job['id']}/logs", raw=True)
            except NotFound:
                # Logs expire; keep the job with no text rather than failing the run
                logger.warning("Logs for job %s (%s) are gone", job.get("id"), job.get("name"))
                logs[job["name"]] = ""
        return logs

    def fetch_file(self, repository: str, path: str, ref: str) -> str | None:
        try:
            return self._api(f"repos/{repository}/contents/{path}?ref={ref}", raw=True)
        except NotFound:
            return None

    def list_failed_runs(self, repository: str, limit: int = 10) -> list[dict[str, Any]]:
        data = self._api(f"repos/{repository}/actions/runs?status=failure&per_page={limit}")
        return data.get("workflow_runs", [])

    # --- Writes ---

    def get_branch_head(self, repository: str, branch: str) -> str:
        ref = self._api(f"repos/{repository}/git/ref/heads/{branch}")
        return ref["object"]["sha"]

    def create_branch(self, repository: str, branch: str, sha: str) -> None:
        self._api(
            f"repos/{repository}/git/refs",
            method="POST",
            payload={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        logger.info("Created branch %s on %s at %s", branch, repository, sha[:8])

    def commit(self, repository: str, branch: str, parent_sha: str, edits: list[FileEdit], message: str) -> str:
        parent = self._api(f"repos/{repository}/git/commits/{parent_sha}")
        tree_entries: list[dict[str, Any]] = []
        for edit in edits:
            entry: dict[str, Any] = {"path": edit.path, "mode": "100644", "type": "blob"}
            if edit.kind == EditKind.DELETE:
                entry["sha"] = None
            else:
                entry["content"] = edit.content or ""
            tree_entries.append(entry)

        tree = self._api(
            f"repos/{repository}/git/trees",
            method="POST",
            payload={"base_tree": parent["tree"]["sha"], "tree": tree_entries},
        )
        new_commit = self._api(
            f"repos/{repository}/git/commits",
            method="POST",
            payload={"message": message, "tree": tree["sha"], "parents": [parent_sha]},
        )
        # Non-forced update: fails with 422 if the branch moved underneath us
        try:
            self._api(
                f"repos/{repository}/git/refs/heads/{branch}",
                method="PATCH",
                payload={"sha": new_commit["sha"], "force": False},
            )
        except AutofixError as e:
            if type(e) is AutofixError and "HTTP 422" in str(e):
                raise PublishConflict(str(e)) from e
            raise
        logger.info("Committed %s on %s: %s", new_commit["sha"][:8], branch, message.split("\n", 1)[0])
        return new_commit["sha"]

    def open_pull_request(
        self,
        repository: str,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        draft: bool = False,
    ) -> dict[str, Any]:
        pr = self._api(
            f"repos/{repository}/pulls",
            method="POST",
            payload={"title": title, "head": head, "base": base, "body": body, "draft": draft},
        )
        if labels:
            try:
                self._api(
                    f"repos/{repository}/issues/{pr['number']}/labels",
                    method="POST",
                    payload={"labels": labels},
                )
            except AutofixError as e:
                logger.warning("Failed to label PR #%s: %s", pr["number"], e)
        logger.info("Opened PR #%s: %s", pr["number"], pr.get("html_url", ""))
        return {"number": pr["number"], "url": pr.get("html_url", "")}
