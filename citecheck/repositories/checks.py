from __future__ import annotations

import itertools
import json
import re
import threading
from datetime import datetime
from typing import Any

from citecheck.db.postgres import PostgresTxRunner

ACTIVE_STATUSES = ("QUEUED", "RUNNING")
TERMINAL_STATUSES = ("DONE", "ERROR")

_MUTABLE_COLUMNS = ("status", "step", "progress_percent", "error_message", "summary", "updated_at")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _guard_allows(
    row: dict[str, Any],
    changes: dict[str, Any],
    expected_statuses: tuple[str, ...] | None,
) -> bool:
    if expected_statuses is not None and row.get("status") not in expected_statuses:
        return False
    if "progress_percent" in changes:
        if int(changes["progress_percent"]) < int(row.get("progress_percent", 0)):
            return False
    return True


class InMemoryChecksRepository:
    def __init__(self, checks: dict[str, dict[str, Any]]) -> None:
        self._checks = checks
        self._lock = threading.RLock()
        self._seq = itertools.count(1)

    def create(self, *, check: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = dict(check)
            row["seq"] = next(self._seq)
            self._checks[str(row["check_id"])] = row
            return dict(row)

    def get(self, *, check_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._checks.get(check_id)
            return dict(row) if row is not None else None

    def update(
        self,
        *,
        check_id: str,
        changes: dict[str, Any],
        expected_statuses: tuple[str, ...] | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``changes`` atomically; ``None`` when missing or the guard refuses."""
        for key in changes:
            if key not in _MUTABLE_COLUMNS:
                raise ValueError(f"column is not mutable: {key}")
        with self._lock:
            row = self._checks.get(check_id)
            if row is None or not _guard_allows(row, changes, expected_statuses):
                return None
            row.update(changes)
            return dict(row)

    def delete(self, *, check_id: str) -> bool:
        with self._lock:
            return self._checks.pop(check_id, None) is not None

    def _for_document(self, document_id: str) -> list[dict[str, Any]]:
        rows = [r for r in self._checks.values() if r.get("document_id") == document_id]
        return sorted(rows, key=lambda r: int(r["seq"]), reverse=True)

    def find_active_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            for row in self._for_document(document_id):
                if row.get("status") in ACTIVE_STATUSES:
                    return dict(row)
            return None

    def find_latest_completed_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            done = [r for r in self._for_document(document_id) if r.get("status") == "DONE"]
            if not done:
                return None
            return dict(max(done, key=lambda r: (str(r.get("updated_at") or ""), int(r["seq"]))))

    def find_latest_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            rows = self._for_document(document_id)
            return dict(rows[0]) if rows else None

    def delete_completed_for_document(
        self,
        *,
        document_id: str,
        exclude_check_id: str | None = None,
    ) -> list[str]:
        with self._lock:
            doomed = [
                str(r["check_id"])
                for r in self._for_document(document_id)
                if r.get("status") == "DONE" and r.get("check_id") != exclude_check_id
            ]
            for check_id in doomed:
                self._checks.pop(check_id, None)
            return doomed

    def list_for_project(self, *, project_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [r for r in self._checks.values() if r.get("project_id") == project_id]
            return [dict(r) for r in sorted(rows, key=lambda r: int(r["seq"]), reverse=True)]

    def list_active(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = [r for r in self._checks.values() if r.get("status") in ACTIVE_STATUSES]
            return [dict(r) for r in sorted(rows, key=lambda r: int(r["seq"]))]


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class PostgresChecksRepository:
    """Check rows in PostgreSQL; uniqueness per document is enforced by the orchestrator."""

    _COLUMNS = (
        "check_id, seq, project_id, document_id, filename, content, options, status, step, "
        "progress_percent, error_message, summary, created_at, updated_at"
    )

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "citation_checks") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                check_id TEXT PRIMARY KEY,
                seq BIGSERIAL NOT NULL,
                project_id TEXT NOT NULL,
                document_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                content TEXT NOT NULL,
                options JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                status TEXT NOT NULL,
                step TEXT NOT NULL,
                progress_percent INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                summary JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
        """
        index_sql = f"""
            CREATE INDEX IF NOT EXISTS idx_{self._table_name}_document
            ON {self._table_name}(document_id, status, seq)
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)
                cur.execute(index_sql)

        self._tx_runner.run_in_tx(fn=_op)

    @staticmethod
    def _row_to_check(row: tuple[Any, ...]) -> dict[str, Any]:
        return {
            "check_id": row[0],
            "seq": int(row[1]),
            "project_id": row[2],
            "document_id": row[3],
            "filename": row[4],
            "content": row[5],
            "options": row[6] if isinstance(row[6], dict) else {},
            "status": row[7],
            "step": row[8],
            "progress_percent": int(row[9]),
            "error_message": row[10],
            "summary": row[11] if isinstance(row[11], dict) else None,
            "created_at": _iso(row[12]),
            "updated_at": _iso(row[13]),
        }

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._row_to_check(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [self._row_to_check(r) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def create(self, *, check: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (
                check_id, project_id, document_id, filename, content, options, status, step,
                progress_percent, error_message, summary, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s::jsonb, %s, %s)
            RETURNING {self._COLUMNS}
        """
        summary = check.get("summary")
        params = (
            check["check_id"],
            check["project_id"],
            check["document_id"],
            check.get("filename", ""),
            check.get("content", ""),
            json.dumps(check.get("options") or {}, ensure_ascii=True, sort_keys=True),
            check["status"],
            check["step"],
            int(check.get("progress_percent", 0)),
            check.get("error_message"),
            json.dumps(summary, ensure_ascii=True, sort_keys=True) if summary is not None else None,
            check["created_at"],
            check["updated_at"],
        )
        created = self._fetch_one(sql, params)
        return created if created is not None else dict(check)

    def get(self, *, check_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE check_id = %s LIMIT 1"
        return self._fetch_one(sql, (check_id,))

    def update(
        self,
        *,
        check_id: str,
        changes: dict[str, Any],
        expected_statuses: tuple[str, ...] | None = None,
    ) -> dict[str, Any] | None:
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in changes.items():
            if key not in _MUTABLE_COLUMNS:
                raise ValueError(f"column is not mutable: {key}")
            if key == "summary":
                assignments.append("summary = %s::jsonb")
                params.append(json.dumps(value, ensure_ascii=True, sort_keys=True) if value is not None else None)
            else:
                assignments.append(f"{key} = %s")
                params.append(value)
        if not assignments:
            return self.get(check_id=check_id)
        where = ["check_id = %s"]
        params.append(check_id)
        if expected_statuses is not None:
            where.append("status = ANY(%s)")
            params.append(list(expected_statuses))
        if "progress_percent" in changes:
            where.append("progress_percent <= %s")
            params.append(int(changes["progress_percent"]))
        sql = f"""
            UPDATE {self._table_name}
            SET {", ".join(assignments)}
            WHERE {" AND ".join(where)}
            RETURNING {self._COLUMNS}
        """
        return self._fetch_one(sql, tuple(params))

    def delete(self, *, check_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE check_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (check_id,))
                return int(cur.rowcount or 0) > 0

        return self._tx_runner.run_in_tx(fn=_op)

    def find_active_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            WHERE document_id = %s AND status = ANY(%s)
            ORDER BY seq DESC
            LIMIT 1
        """
        return self._fetch_one(sql, (document_id, list(ACTIVE_STATUSES)))

    def find_latest_completed_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            WHERE document_id = %s AND status = 'DONE'
            ORDER BY updated_at DESC, seq DESC
            LIMIT 1
        """
        return self._fetch_one(sql, (document_id,))

    def find_latest_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            WHERE document_id = %s
            ORDER BY seq DESC
            LIMIT 1
        """
        return self._fetch_one(sql, (document_id,))

    def delete_completed_for_document(
        self,
        *,
        document_id: str,
        exclude_check_id: str | None = None,
    ) -> list[str]:
        sql = f"""
            DELETE FROM {self._table_name}
            WHERE document_id = %s AND status = 'DONE' AND check_id <> %s
            RETURNING check_id
        """

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (document_id, exclude_check_id or ""))
                rows = cur.fetchall()
            return [str(r[0]) for r in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_project(self, *, project_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            WHERE project_id = %s
            ORDER BY seq DESC
        """
        return self._fetch_all(sql, (project_id,))

    def list_active(self) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._COLUMNS} FROM {self._table_name}
            WHERE status = ANY(%s)
            ORDER BY seq ASC
        """
        return self._fetch_all(sql, (list(ACTIVE_STATUSES),))
