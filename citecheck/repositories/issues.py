from __future__ import annotations

import json
import re
import threading
from typing import Any

from citecheck.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _copy_issue(issue: dict[str, Any]) -> dict[str, Any]:
    out = dict(issue)
    out["cited_keys"] = list(issue.get("cited_keys") or [])
    out["suggestions"] = list(issue.get("suggestions") or [])
    out["evidence"] = [dict(e) for e in issue.get("evidence") or []]
    return out


class InMemoryIssuesRepository:
    """Issues keyed by issue id; evidence rows live inside their issue."""

    def __init__(self, issues: dict[str, dict[str, Any]]) -> None:
        self._issues = issues
        self._lock = threading.RLock()

    def insert_batch(self, *, check_id: str, issues: list[dict[str, Any]]) -> list[dict[str, Any]]:
        with self._lock:
            stored: list[dict[str, Any]] = []
            for issue in issues:
                row = _copy_issue(issue)
                row["check_id"] = check_id
                self._issues[str(row["issue_id"])] = row
                stored.append(_copy_issue(row))
            return stored

    def get(self, *, issue_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._issues.get(issue_id)
            return _copy_issue(row) if row is not None else None

    def list_for_check(self, *, check_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [r for r in self._issues.values() if r.get("check_id") == check_id]
            return [_copy_issue(r) for r in sorted(rows, key=lambda r: int(r.get("ordinal", 0)))]

    def set_resolved(self, *, issue_id: str, resolved: bool) -> dict[str, Any] | None:
        with self._lock:
            row = self._issues.get(issue_id)
            if row is None:
                return None
            row["resolved"] = bool(resolved)
            return _copy_issue(row)

    def delete_for_check(self, *, check_id: str) -> int:
        with self._lock:
            doomed = [key for key, row in self._issues.items() if row.get("check_id") == check_id]
            for key in doomed:
                self._issues.pop(key, None)
            return len(doomed)


class PostgresIssuesRepository:
    """Issue and evidence rows; evidence cascades from issues, issues from checks."""

    _ISSUE_COLUMNS = (
        "issue_id, check_id, project_id, document_id, ordinal, issue_type, severity, from_pos, to_pos, "
        "line_start, line_end, snippet, cited_keys, suggestions, resolved"
    )
    _EVIDENCE_COLUMNS = (
        "evidence_id, issue_id, ordinal, source, matched_text, similarity, support_score, extracted_context"
    )

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        issues_table: str = "citation_issues",
        evidence_table: str = "citation_evidence",
        checks_table: str = "citation_checks",
    ) -> None:
        self._tx_runner = tx_runner
        self._issues_table = _validate_identifier(issues_table)
        self._evidence_table = _validate_identifier(evidence_table)
        self._checks_table = _validate_identifier(checks_table)

    def ensure_schema(self) -> None:
        issues_sql = f"""
            CREATE TABLE IF NOT EXISTS {self._issues_table} (
                issue_id TEXT PRIMARY KEY,
                check_id TEXT NOT NULL REFERENCES {self._checks_table}(check_id) ON DELETE CASCADE,
                project_id TEXT NOT NULL,
                document_id TEXT NOT NULL,
                ordinal INTEGER NOT NULL,
                issue_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                from_pos INTEGER NOT NULL,
                to_pos INTEGER NOT NULL,
                line_start INTEGER NOT NULL,
                line_end INTEGER NOT NULL,
                snippet TEXT NOT NULL,
                cited_keys JSONB NOT NULL DEFAULT '[]'::jsonb,
                suggestions JSONB NOT NULL DEFAULT '[]'::jsonb,
                resolved BOOLEAN NOT NULL DEFAULT FALSE
            )
        """
        evidence_sql = f"""
            CREATE TABLE IF NOT EXISTS {self._evidence_table} (
                evidence_id TEXT PRIMARY KEY,
                issue_id TEXT NOT NULL REFERENCES {self._issues_table}(issue_id) ON DELETE CASCADE,
                ordinal INTEGER NOT NULL,
                source JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                matched_text TEXT NOT NULL,
                similarity DOUBLE PRECISION NOT NULL,
                support_score DOUBLE PRECISION NOT NULL,
                extracted_context TEXT
            )
        """
        index_sql = f"""
            CREATE INDEX IF NOT EXISTS idx_{self._issues_table}_check
            ON {self._issues_table}(check_id, ordinal)
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(issues_sql)
                cur.execute(evidence_sql)
                cur.execute(index_sql)

        self._tx_runner.run_in_tx(fn=_op)

    @staticmethod
    def _row_to_issue(row: tuple[Any, ...]) -> dict[str, Any]:
        return {
            "issue_id": row[0],
            "check_id": row[1],
            "project_id": row[2],
            "document_id": row[3],
            "ordinal": int(row[4]),
            "issue_type": row[5],
            "severity": row[6],
            "from_pos": int(row[7]),
            "to_pos": int(row[8]),
            "line_start": int(row[9]),
            "line_end": int(row[10]),
            "snippet": row[11],
            "cited_keys": row[12] if isinstance(row[12], list) else [],
            "suggestions": row[13] if isinstance(row[13], list) else [],
            "resolved": bool(row[14]),
            "evidence": [],
        }

    @staticmethod
    def _row_to_evidence(row: tuple[Any, ...]) -> dict[str, Any]:
        return {
            "evidence_id": row[0],
            "issue_id": row[1],
            "ordinal": int(row[2]),
            "source": row[3] if isinstance(row[3], dict) else {},
            "matched_text": row[4],
            "similarity": float(row[5]),
            "support_score": float(row[6]),
            "extracted_context": row[7],
        }

    def insert_batch(self, *, check_id: str, issues: list[dict[str, Any]]) -> list[dict[str, Any]]:
        issue_sql = f"""
            INSERT INTO {self._issues_table} ({self._ISSUE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
        """
        evidence_sql = f"""
            INSERT INTO {self._evidence_table} ({self._EVIDENCE_COLUMNS})
            VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s, %s)
        """
        issue_params: list[tuple[Any, ...]] = []
        evidence_params: list[tuple[Any, ...]] = []
        stored: list[dict[str, Any]] = []
        for issue in issues:
            row = _copy_issue(issue)
            row["check_id"] = check_id
            stored.append(row)
            issue_params.append(
                (
                    row["issue_id"],
                    check_id,
                    row["project_id"],
                    row["document_id"],
                    int(row.get("ordinal", 0)),
                    row["issue_type"],
                    row["severity"],
                    int(row["from_pos"]),
                    int(row["to_pos"]),
                    int(row["line_start"]),
                    int(row["line_end"]),
                    row["snippet"],
                    json.dumps(row["cited_keys"], ensure_ascii=True),
                    json.dumps(row["suggestions"], ensure_ascii=True),
                    bool(row.get("resolved", False)),
                )
            )
            for evidence in row["evidence"]:
                evidence_params.append(
                    (
                        evidence["evidence_id"],
                        row["issue_id"],
                        int(evidence.get("ordinal", 0)),
                        json.dumps(evidence.get("source") or {}, ensure_ascii=True, sort_keys=True),
                        evidence.get("matched_text", ""),
                        float(evidence.get("similarity", 0.0)),
                        float(evidence.get("support_score", 0.0)),
                        evidence.get("extracted_context"),
                    )
                )

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                if issue_params:
                    cur.executemany(issue_sql, issue_params)
                if evidence_params:
                    cur.executemany(evidence_sql, evidence_params)
            return stored

        return self._tx_runner.run_in_tx(fn=_op)

    def _attach_evidence(self, cur: Any, issues: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not issues:
            return issues
        by_id = {str(i["issue_id"]): i for i in issues}
        cur.execute(
            f"""
            SELECT {self._EVIDENCE_COLUMNS} FROM {self._evidence_table}
            WHERE issue_id = ANY(%s)
            ORDER BY issue_id, ordinal
            """,
            (list(by_id),),
        )
        for row in cur.fetchall():
            evidence = self._row_to_evidence(row)
            owner = by_id.get(str(evidence["issue_id"]))
            if owner is not None:
                owner["evidence"].append(evidence)
        return issues

    def get(self, *, issue_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._ISSUE_COLUMNS} FROM {self._issues_table} WHERE issue_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (issue_id,))
                row = cur.fetchone()
                if row is None:
                    return None
                return self._attach_evidence(cur, [self._row_to_issue(row)])[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_check(self, *, check_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._ISSUE_COLUMNS} FROM {self._issues_table}
            WHERE check_id = %s
            ORDER BY ordinal
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (check_id,))
                issues = [self._row_to_issue(r) for r in cur.fetchall()]
                return self._attach_evidence(cur, issues)

        return self._tx_runner.run_in_tx(fn=_op)

    def set_resolved(self, *, issue_id: str, resolved: bool) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._issues_table} SET resolved = %s
            WHERE issue_id = %s
            RETURNING {self._ISSUE_COLUMNS}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (bool(resolved), issue_id))
                row = cur.fetchone()
                if row is None:
                    return None
                return self._attach_evidence(cur, [self._row_to_issue(row)])[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def delete_for_check(self, *, check_id: str) -> int:
        sql = f"DELETE FROM {self._issues_table} WHERE check_id = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (check_id,))
                return int(cur.rowcount or 0)

        return self._tx_runner.run_in_tx(fn=_op)
