"""Tests for the gh CLI source-control client."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from autofix.errors import AutofixError, NotFound, PermissionDenied, PublishConflict, TransientFetchError
from autofix.models import EditKind, FileEdit
from autofix.scm import GitHubCLIClient, map_gh_error


def _proc(stdout="", stderr="", returncode=0):
    return MagicMock(stdout=stdout, stderr=stderr, returncode=returncode)


class TestMapGhError:
    @pytest.mark.parametrize(
        "output, expected",
        [
            ("gh: Not Found (HTTP 404)", NotFound),
            ("gh: Bad credentials (HTTP 401)", PermissionDenied),
            ("gh: Resource not accessible by integration (HTTP 403)", PermissionDenied),
            ("gh: API rate limit exceeded (HTTP 403)", TransientFetchError),
            ("gh: Reference already exists (HTTP 422)", PublishConflict),
            ("gh: Conflict (HTTP 409)", PublishConflict),
            ("gh: Too Many Requests (HTTP 429)", TransientFetchError),
            ("gh: Bad Gateway (HTTP 502)", TransientFetchError),
            ("error connecting to api.github.com", TransientFetchError),
        ],
    )
    def test_mapping(self, output, expected):
        assert type(map_gh_error(output, "GET x")) is expected

    def test_other_status_is_plain_error(self):
        err = map_gh_error("gh: Validation Failed (HTTP 422)", "POST x")
        assert type(err) is AutofixError
        assert "POST x" in str(err)


class TestGitHubCLIClient:
    @patch("autofix.scm.subprocess.run")
    def test_fetch_run_merges_jobs(self, mock_run):
        mock_run.side_effect = [
            _proc(json.dumps({"id": 5, "conclusion": "failure"})),
            _proc(json.dumps({"jobs": [{"id": 1, "name": "test"}]})),
        ]
        run = GitHubCLIClient().fetch_run("acme/widgets", 5)
        assert run["jobs"] == [{"id": 1, "name": "test"}]
        cmd = mock_run.call_args_list[0].args[0]
        assert cmd[:4] == ["gh", "api", "--method", "GET"]
        assert cmd[4] == "repos/acme/widgets/actions/runs/5"

    @patch("autofix.scm.subprocess.run")
    def test_fetch_logs_only_failed_jobs(self, mock_run):
        jobs = {
            "jobs": [
                {"id": 1, "name": "ok", "conclusion": "success"},
                {"id": 2, "name": "bad", "conclusion": "failure"},
            ]
        }
        mock_run.side_effect = [_proc(json.dumps(jobs)), _proc("raw log text")]
        logs = GitHubCLIClient().fetch_logs("acme/widgets", 5)
        assert logs == {"bad": "raw log text"}
        raw_cmd = mock_run.call_args_list[1].args[0]
        assert "Accept: application/vnd.github.raw" in raw_cmd

    @patch("autofix.scm.subprocess.run")
    def test_expired_logs_become_empty(self, mock_run):
        jobs = {"jobs": [{"id": 2, "name": "bad", "conclusion": "failure"}]}
        mock_run.side_effect = [_proc(json.dumps(jobs)), _proc(stderr="gh: Not Found (HTTP 404)", returncode=1)]
        assert GitHubCLIClient().fetch_logs("acme/widgets", 5) == {"bad": ""}

    @patch("autofix.scm.subprocess.run")
    def test_fetch_file_missing(self, mock_run):
        mock_run.return_value = _proc(stderr="gh: Not Found (HTTP 404)", returncode=1)
        assert GitHubCLIClient().fetch_file("acme/widgets", "nope.py", "abc") is None

    @patch("autofix.scm.subprocess.run")
    def test_timeout_is_transient(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=1)
        with pytest.raises(TransientFetchError):
            GitHubCLIClient(timeout=1).fetch_run("acme/widgets", 5)

    @patch("autofix.scm.subprocess.run")
    def test_missing_cli_is_transient(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        with pytest.raises(TransientFetchError, match="gh CLI not available"):
            GitHubCLIClient().list_failed_runs("acme/widgets")

    @patch("autofix.scm.subprocess.run")
    def test_commit_uses_git_data_api(self, mock_run):
        mock_run.side_effect = [
            _proc(json.dumps({"sha": "parent", "tree": {"sha": "tree0"}})),
            _proc(json.dumps({"sha": "tree1"})),
            _proc(json.dumps({"sha": "newcommit"})),
            _proc(json.dumps({"object": {"sha": "newcommit"}})),
        ]
        edits = [
            FileEdit(path="src/app.py", kind=EditKind.MODIFY, content="x = 1\n"),
            FileEdit(path="old.py", kind=EditKind.DELETE),
        ]
        sha = GitHubCLIClient().commit("acme/widgets", "autofix/b", "parent", edits, "fix it")

        assert sha == "newcommit"
        tree_payload = json.loads(mock_run.call_args_list[1].kwargs["input"])
        assert tree_payload["base_tree"] == "tree0"
        assert tree_payload["tree"][0]["content"] == "x = 1\n"
        assert tree_payload["tree"][1]["sha"] is None
        ref_payload = json.loads(mock_run.call_args_list[3].kwargs["input"])
        assert ref_payload == {"sha": "newcommit", "force": False}

    @patch("autofix.scm.subprocess.run")
    def test_commit_ref_moved_is_conflict(self, mock_run):
        mock_run.side_effect = [
            _proc(json.dumps({"sha": "parent", "tree": {"sha": "tree0"}})),
            _proc(json.dumps({"sha": "tree1"})),
            _proc(json.dumps({"sha": "newcommit"})),
            _proc(stderr="gh: Update is not a fast forward (HTTP 422)", returncode=1),
        ]
        edits = [FileEdit(path="a.py", kind=EditKind.MODIFY, content="")]
        with pytest.raises(PublishConflict):
            GitHubCLIClient().commit("acme/widgets", "autofix/b", "parent", edits, "fix it")

    @patch("autofix.scm.subprocess.run")
    def test_open_pull_request_labels_best_effort(self, mock_run):
        mock_run.side_effect = [
            _proc(json.dumps({"number": 12, "html_url": "https://github.com/acme/widgets/pull/12"})),
            _proc(stderr="gh: Forbidden (HTTP 403)", returncode=1),
        ]
        pr = GitHubCLIClient().open_pull_request(
            "acme/widgets", head="autofix/b", base="main", title="t", body="b", labels=["autofix"], draft=True
        )
        assert pr == {"number": 12, "url": "https://github.com/acme/widgets/pull/12"}
        pr_payload = json.loads(mock_run.call_args_list[0].kwargs["input"])
        assert pr_payload["draft"] is True
        assert pr_payload["base"] == "main"
