"""Failure classifier: turns raw job logs into ordered, structured failure signals (pure regex, no LLM)."""

from __future__ import annotations

import re
from dataclasses import dataclass

from autofix.models import FailureSignal, SignalCategory, WorkflowRun

MAX_EXCERPT_CHARS = 500


@dataclass(frozen=True)
class SignalPattern:
    """One row of the detection table.

    Named groups ``file``, ``line``, ``test`` and ``code`` are copied onto the
    emitted signal when present.
    """

    category: SignalCategory
    regex: re.Pattern

    @classmethod
    def of(cls, category: SignalCategory, pattern: str, flags: int = 0) -> SignalPattern:
        return cls(category=category, regex=re.compile(pattern, flags))


# Order matters: the first pattern that matches a line wins.
DEFAULT_PATTERNS: tuple[SignalPattern, ...] = (
    # Timeouts
    SignalPattern.of(
        SignalCategory.TIMEOUT,
        r"\b(?:timed out|timeout exceeded|deadline exceeded|exceeded the maximum execution time)\b",
        re.IGNORECASE,
    ),
    SignalPattern.of(SignalCategory.TIMEOUT, r"##\[error\]The operation was canceled"),
    # Security audits
    SignalPattern.of(
        SignalCategory.SECURITY,
        r"\b(?:found \d+ (?:\w+ )?vulnerabilit(?:y|ies)|security vulnerabilit(?:y|ies)|insecure dependency)",
        re.IGNORECASE,
    ),
    SignalPattern.of(SignalCategory.SECURITY, r"\b(?P<code>CVE-\d{4}-\d{4,}|GHSA(?:-[0-9a-z]{4}){3})\b"),
    # Dependency resolution
    SignalPattern.of(
        SignalCategory.DEPENDENCY,
        r"(?:Could not find a version that satisfies the requirement|No matching distribution found for) "
        r"(?P<code>[^\s(]+)",
    ),
    SignalPattern.of(SignalCategory.DEPENDENCY, r"\bResolutionImpossible\b|dependency conflict", re.IGNORECASE),
    SignalPattern.of(SignalCategory.DEPENDENCY, r"ModuleNotFoundError: No module named '(?P<code>[^']+)'"),
    SignalPattern.of(SignalCategory.DEPENDENCY, r"npm (?:ERR!|error) code (?P<code>ERESOLVE|E404|ETARGET|EINTEGRITY)"),
    SignalPattern.of(SignalCategory.DEPENDENCY, r"missing go\.sum entry for module providing package (?P<code>\S+)"),
    SignalPattern.of(
        SignalCategory.DEPENDENCY, r"go: (?P<code>\S+@\S+): (?:reading|unknown revision|invalid version)"
    ),
    SignalPattern.of(SignalCategory.DEPENDENCY, r"failed to select a version for the requirement `(?P<code>[^`]+)`"),
    # Test failures
    SignalPattern.of(SignalCategory.TEST, r"\bFAILED (?P<file>[^\s:]+)::(?P<test>\S+)"),
    SignalPattern.of(SignalCategory.TEST, r"--- FAIL: (?P<test>\S+)"),
    SignalPattern.of(SignalCategory.TEST, r"\btest (?P<test>\S+) \.\.\. FAILED"),
    SignalPattern.of(SignalCategory.TEST, r"\bFAIL\s+(?P<file>\S+\.(?:[cm]?[jt]sx?))\b"),
    SignalPattern.of(SignalCategory.TEST, r"[✕×]\s+(?P<test>.+?)(?:\s+\(\d+\s*ms\))?\s*$"),
    SignalPattern.of(SignalCategory.TEST, r"\[ERROR\]\s+(?:Failures:\s+)?(?P<test>[\w$]+\.\w+):(?P<line>\d+)\s"),
    SignalPattern.of(SignalCategory.TEST, r"Tests run: \d+, Failures: [1-9]\d*"),
    SignalPattern.of(SignalCategory.TEST, r"=+ .*\b\d+ failed\b"),
    # Lint and formatting
    SignalPattern.of(
        SignalCategory.LINT,
        r"(?P<file>[\w./-]+\.py):(?P<line>\d+):\d+:\s+(?P<code>[A-Z]{1,3}\d{2,4})\b",
    ),
    SignalPattern.of(SignalCategory.LINT, r"\bwould reformat (?P<file>\S+)", re.IGNORECASE),
    SignalPattern.of(SignalCategory.LINT, r"^\s*(?P<line>\d+):\d+\s+error\s+.+?\s{2,}(?P<code>[\w@/-]+)\s*$"),
    # Build / compile
    SignalPattern.of(
        SignalCategory.BUILD,
        r"(?P<file>[\w./-]+\.py):(?P<line>\d+):\s+error:\s+.*?(?:\s+\[(?P<code>[\w-]+)\])?\s*$",
    ),
    SignalPattern.of(SignalCategory.BUILD, r"\b(?P<code>SyntaxError|IndentationError|TabError): "),
    SignalPattern.of(SignalCategory.BUILD, r"(?P<file>[\w./-]+\.tsx?)\((?P<line>\d+),\d+\): error (?P<code>TS\d+)"),
    SignalPattern.of(SignalCategory.BUILD, r"(?P<file>[\w./-]+\.java):\[?(?P<line>\d+)(?:,\d+\])?:? (?:error:)?"),
    SignalPattern.of(SignalCategory.BUILD, r"error\[(?P<code>E\d{4})\]"),
    SignalPattern.of(SignalCategory.BUILD, r"(?P<file>[\w./-]+\.go):(?P<line>\d+):\d+: "),
    SignalPattern.of(
        SignalCategory.BUILD,
        r"\b(?:build failed|compilation failed|could not compile|out of memory)\b",
        re.IGNORECASE,
    ),
)


class FailureClassifier:
    """Scans failed job logs line by line against an ordered pattern table."""

    def __init__(
        self,
        patterns: tuple[SignalPattern, ...] | list[SignalPattern] = DEFAULT_PATTERNS,
        max_signals: int = 50,
        tail_lines: int = 200,
    ):
        self.patterns = tuple(patterns)
        self.max_signals = max_signals
        self.tail_lines = tail_lines

    def classify(self, run: WorkflowRun) -> list[FailureSignal]:
        signals: list[FailureSignal] = []
        seen: set[tuple[SignalCategory, str]] = set()
        position = 0

        for job in run.failed_jobs:
            for raw_line in job.log.splitlines():
                line = raw_line.strip()
                if not line:
                    continue
                position += 1
                signal = self._match_line(line)
                if signal is None:
                    continue
                key = (signal.category, signal.excerpt)
                if key in seen:
                    continue
                seen.add(key)
                signals.append(
                    signal.model_copy(update={"job_name": job.name, "exit_code": job.exit_code, "position": position})
                )
                if len(signals) >= self.max_signals:
                    return signals

        if not signals:
            signals.append(self._unknown_signal(run))
        return signals

    def _match_line(self, line: str) -> FailureSignal | None:
        for pattern in self.patterns:
            match = pattern.regex.search(line)
            if match is None:
                continue
            groups = match.groupdict()
            line_no = groups.get("line")
            return FailureSignal(
                category=pattern.category,
                excerpt=line[:MAX_EXCERPT_CHARS],
                file_path=groups.get("file") or None,
                line=int(line_no) if line_no else None,
                test_name=groups.get("test") or None,
                code=groups.get("code") or None,
            )
        return None

    def _unknown_signal(self, run: WorkflowRun) -> FailureSignal:
        """Fallback when nothing matched: carry the raw tail so there is still evidence to reason about."""
        failed = run.failed_jobs
        lines: list[str] = []
        for job in failed:
            lines.extend(job.log.splitlines())
        tail = "\n".join(lines[-self.tail_lines :]).strip()

        if not tail:
            steps = [f"{job_name} / {step.name}" for job_name, step in run.failed_steps]
            tail = "Failed steps: " + ", ".join(steps) if steps else "No failure evidence available"

        first = failed[0] if failed else None
        return FailureSignal(
            category=SignalCategory.UNKNOWN,
            excerpt=tail,
            job_name=first.name if first else "",
            exit_code=first.exit_code if first else None,
        )
