"""Git operations on disposable sandbox checkouts."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger("autofix.git_utils")

# Never written to, whatever the edit list says
BLOCKED_PARTS = {".git"}


def git_cmd(repo_dir: Path, *args: str, check: bool = True, timeout: float = 60) -> subprocess.CompletedProcess:
    """Run a git command inside ``repo_dir``."""
    cmd = ["git", "-C", str(repo_dir)] + list(args)
    logger.debug("git %s", " ".join(args))
    return subprocess.run(cmd, capture_output=True, text=True, check=check, timeout=timeout)


def clone_snapshot(source: str, dest: Path, commit_sha: str = "", timeout: float = 300) -> None:
    """Clone ``source`` (URL or local path) into ``dest`` and detach at ``commit_sha``."""
    subprocess.run(
        ["git", "clone", "--quiet", source, str(dest)],
        capture_output=True,
        text=True,
        check=True,
        timeout=timeout,
    )
    if commit_sha:
        git_cmd(dest, "checkout", "--quiet", "--detach", commit_sha, timeout=timeout)
    logger.info("Cloned %s at %s into %s", source, commit_sha[:8] or "HEAD", dest)


def head_sha(repo_dir: Path) -> str:
    """Return the commit currently checked out."""
    result = git_cmd(repo_dir, "rev-parse", "HEAD")
    return result.stdout.strip()


def is_path_safe(root: Path, file_path: str) -> bool:
    """Check that a file path stays within ``root`` and outside git internals."""
    root = root.resolve()
    resolved = (root / file_path).resolve()

    if resolved != root and root not in resolved.parents:
        logger.warning("Path escapes workspace root: %s", file_path)
        return False

    if BLOCKED_PARTS.intersection(resolved.relative_to(root).parts):
        logger.warning("Path touches git internals: %s", file_path)
        return False

    return True


def read_source_file(root: Path, rel_path: str, max_chars: int | None = None) -> str | None:
    """Read a checkout file, optionally truncated.

    Returns None if the file does not exist, cannot be read, or lies outside ``root``.
    """
    if not is_path_safe(root, rel_path):
        return None
    full_path = root / rel_path
    if not full_path.is_file():
        return None
    try:
        content = full_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s: %s", rel_path, e)
        return None
    if max_chars is not None and len(content) > max_chars:
        content = content[:max_chars] + "\n... (truncated)"
    return content
