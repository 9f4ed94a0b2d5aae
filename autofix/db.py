"""SQLite audit store for terminal remediation outcomes."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any

from autofix.models import Phase, RunOutcome

logger = logging.getLogger("autofix.db")


class Database:
    def __init__(self, db_path: Path | None = None):
        db_path = db_path or Path("data/autofix.db")
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # Worker threads record outcomes concurrently
        self._lock = threading.Lock()
        self._create_tables()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def execute(self, query: str, params: tuple | list = (), *, commit: bool = False) -> sqlite3.Cursor:
        with self._lock:
            result = self._conn.execute(query, params)
            if commit:
                self._conn.commit()
            return result

    def fetchone(self, query: str, params: tuple | list = ()) -> dict | None:
        """Execute and return one row as dict, or None."""
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return dict(row) if row else None

    def fetchall(self, query: str, params: tuple | list = ()) -> list[dict]:
        """Execute and return all rows as list of dicts."""
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Schema setup
    # ------------------------------------------------------------------

    def _create_tables(self):
        self.execute(
            """CREATE TABLE IF NOT EXISTS remediation_runs (
                id TEXT PRIMARY KEY,
                repository TEXT NOT NULL,
                run_id INTEGER NOT NULL,
                phase TEXT NOT NULL,
                reason TEXT,
                summary TEXT,
                root_cause TEXT,
                providers_tried TEXT,
                total_attempts INTEGER DEFAULT 0,
                validations TEXT,
                pr_number INTEGER,
                pr_url TEXT,
                pr_branch TEXT,
                input_tokens INTEGER DEFAULT 0,
                output_tokens INTEGER DEFAULT 0,
                duration_seconds REAL,
                finished_at TIMESTAMP NOT NULL
            )""",
            commit=True,
        )
        self.execute(
            """CREATE TABLE IF NOT EXISTS provider_attempts (
                id TEXT PRIMARY KEY,
                remediation_id TEXT NOT NULL REFERENCES remediation_runs(id),
                provider TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                round INTEGER NOT NULL,
                ok INTEGER NOT NULL,
                error TEXT,
                duration_seconds REAL
            )""",
            commit=True,
        )
        self.execute(
            "CREATE INDEX IF NOT EXISTS idx_remediation_runs_key ON remediation_runs (repository, run_id)",
            commit=True,
        )

    # --- Outcomes ---

    def record_outcome(self, outcome: RunOutcome) -> str:
        rid = str(uuid.uuid4())
        pr = outcome.pull_request
        self.execute(
            """INSERT INTO remediation_runs
            (id, repository, run_id, phase, reason, summary, root_cause, providers_tried,
             total_attempts, validations, pr_number, pr_url, pr_branch,
             input_tokens, output_tokens, duration_seconds, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                rid,
                outcome.repository,
                outcome.run_id,
                outcome.phase.value,
                outcome.reason,
                outcome.summary,
                outcome.root_cause,
                json.dumps(outcome.providers_tried),
                outcome.total_attempts,
                json.dumps(
                    [
                        {"candidate_id": v.candidate_id, "verdict": v.verdict, "failure_kind": v.failure_kind.value}
                        for v in outcome.validations
                    ]
                ),
                pr.number if pr else None,
                pr.url if pr else None,
                pr.branch if pr else None,
                sum(a.input_tokens for a in outcome.analyses),
                sum(a.output_tokens for a in outcome.analyses),
                outcome.duration_seconds,
                outcome.finished_at.isoformat(),
            ),
            commit=True,
        )
        for attempt in outcome.attempts:
            self.execute(
                """INSERT INTO provider_attempts
                (id, remediation_id, provider, attempt, round, ok, error, duration_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(uuid.uuid4()),
                    rid,
                    attempt.provider,
                    attempt.attempt,
                    attempt.round,
                    1 if attempt.ok else 0,
                    attempt.error or None,
                    attempt.duration_seconds,
                ),
                commit=True,
            )
        return rid

    def get_recent_outcomes(self, repository: str | None = None, limit: int = 20) -> list[dict]:
        query = "SELECT * FROM remediation_runs"
        params: list[Any] = []
        if repository:
            query += " WHERE repository = ?"
            params.append(repository)
        query += " ORDER BY finished_at DESC LIMIT ?"
        params.append(limit)
        rows = self.fetchall(query, params)
        for row in rows:
            row["providers_tried"] = json.loads(row["providers_tried"] or "[]")
            row["validations"] = json.loads(row["validations"] or "[]")
        return rows

    def get_success_rate(self, repository: str | None = None) -> float:
        query = (
            "SELECT COUNT(*) as total, SUM(CASE WHEN phase=? THEN 1 ELSE 0 END) as successes FROM remediation_runs"
        )
        params: list[Any] = [Phase.PUBLISHED.value]
        if repository:
            query += " WHERE repository = ?"
            params.append(repository)
        row = self.fetchone(query, params)
        if not row:
            return 0.0
        total = row["total"]
        return (row["successes"] or 0) / total if total > 0 else 0.0

    def get_provider_stats(self) -> list[dict]:
        """Per-provider call counts and failure rates across all recorded runs."""
        return self.fetchall(
            """SELECT provider,
                      COUNT(*) as calls,
                      SUM(CASE WHEN ok=1 THEN 1 ELSE 0 END) as successes,
                      SUM(CASE WHEN ok=0 THEN 1 ELSE 0 END) as failures,
                      AVG(duration_seconds) as avg_duration_seconds
               FROM provider_attempts
               GROUP BY provider
               ORDER BY calls DESC"""
        )
