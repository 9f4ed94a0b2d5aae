"""Fix generator: turns a backend's proposed edits into a concrete, checked FixCandidate."""

from __future__ import annotations

import difflib
import fnmatch
import logging
import posixpath
import re
from typing import Callable

from autofix.config import DEFAULT_PROTECTED_PATHS
from autofix.errors import UnparsablePatch
from autofix.models import AnalysisResult, EditKind, FileEdit, FixCandidate, ProposedEdit

logger = logging.getLogger("autofix.fixgen")

ReadFile = Callable[[str], str | None]

_DRIVE = re.compile(r"^[A-Za-z]:")


def normalize_path(path: str) -> str:
    """Return a clean repository-relative POSIX path or raise UnparsablePatch."""
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        raise UnparsablePatch("edit has an empty path")
    if raw.startswith(("/", "~")) or _DRIVE.match(raw):
        raise UnparsablePatch(f"absolute path not allowed: {path}")
    norm = posixpath.normpath(raw)
    if norm in (".", "..") or norm.startswith("../"):
        raise UnparsablePatch(f"path escapes the repository: {path}")
    return norm


def is_protected(path: str, patterns: list[str]) -> bool:
    lower = path.lower()
    name = posixpath.basename(lower)
    for pattern in patterns:
        p = pattern.lower()
        if fnmatch.fnmatchcase(lower, p):
            return True
        if "/" not in p and fnmatch.fnmatchcase(name, p):
            return True
    return False


def unified_diff(path: str, old: str, new: str, kind: EditKind) -> str:
    fromfile = "/dev/null" if kind == EditKind.CREATE else f"a/{path}"
    tofile = "/dev/null" if kind == EditKind.DELETE else f"b/{path}"
    return "".join(
        difflib.unified_diff(
            old.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=fromfile,
            tofile=tofile,
        )
    )


class FixGenerator:
    """Checks every proposed edit against the current tree.

    No side effects: the result describes edits, nothing is written.
    """

    def __init__(self, protected_paths: list[str] | None = None):
        self.protected_paths = list(DEFAULT_PROTECTED_PATHS if protected_paths is None else protected_paths)

    def materialize(self, analysis: AnalysisResult, read_file: ReadFile) -> FixCandidate:
        if not analysis.proposed_edits:
            raise UnparsablePatch(f"{analysis.provider} proposed no edits")

        edits: list[FileEdit] = []
        seen: set[str] = set()
        for proposed in analysis.proposed_edits:
            path = normalize_path(proposed.path)
            if path in seen:
                raise UnparsablePatch(f"more than one edit targets {path}")
            seen.add(path)
            if is_protected(path, self.protected_paths):
                raise UnparsablePatch(f"refusing to touch protected path: {path}")
            edits.append(self._resolve(path, proposed, read_file))

        candidate = FixCandidate(edits=edits, rationale=analysis.rationale or analysis.root_cause, analysis=analysis)
        logger.info(f"Materialized {candidate.id} from {analysis.provider}: {', '.join(candidate.files_changed)}")
        return candidate

    def _resolve(self, path: str, proposed: ProposedEdit, read_file: ReadFile) -> FileEdit:
        current = read_file(path)

        if proposed.kind == EditKind.CREATE:
            if current is not None:
                raise UnparsablePatch(f"cannot create {path}: file already exists")
            if proposed.content is None:
                raise UnparsablePatch(f"create of {path} has no content")
            new = proposed.content

        elif proposed.kind == EditKind.DELETE:
            if current is None:
                raise UnparsablePatch(f"cannot delete {path}: file does not exist")
            return FileEdit(
                path=path,
                kind=EditKind.DELETE,
                content=None,
                diff=unified_diff(path, current, "", EditKind.DELETE),
                explanation=proposed.explanation,
            )

        else:
            if current is None:
                raise UnparsablePatch(f"cannot modify {path}: file does not exist")
            if proposed.search:
                occurrences = current.count(proposed.search)
                if occurrences == 0:
                    raise UnparsablePatch(f"search text not found in {path}")
                if occurrences > 1:
                    raise UnparsablePatch(f"search text is ambiguous in {path} ({occurrences} matches)")
                new = current.replace(proposed.search, proposed.replace or "", 1)
            elif proposed.content is not None:
                new = proposed.content
            else:
                raise UnparsablePatch(f"modify of {path} has neither content nor search/replace")
            if new == current:
                raise UnparsablePatch(f"edit to {path} changes nothing")

        return FileEdit(
            path=path,
            kind=proposed.kind,
            content=new,
            diff=unified_diff(path, current or "", new, proposed.kind),
            explanation=proposed.explanation,
        )
