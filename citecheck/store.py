from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, Iterator

from citecheck.context_sources import ContextSourceProvider, create_context_sources_from_env
from citecheck.db.postgres import PostgresTxRunner
from citecheck.dispatcher import DispatchRejected, ThreadPoolDispatcher, create_dispatcher_from_env
from citecheck.engine import AnalysisContext, AnalysisEngine, AnalysisIssue, coerce_issues, create_engine_from_env
from citecheck.errors import EngineFailure
from citecheck.repositories import (
    InMemoryChecksRepository,
    InMemoryIssuesRepository,
    PostgresChecksRepository,
    PostgresIssuesRepository,
)
from citecheck.repositories.checks import ACTIVE_STATUSES, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "document.tex"
CANCELLED_MESSAGE = "cancelled by user"
DISPATCH_REJECTED_MESSAGE = "dispatch rejected: worker queue is full"
RESTARTED_MESSAGE = "abandoned: service restarted before the check finished"

# grace added on top of the engine deadline before an in-flight check counts as abandoned
ABANDONED_MARGIN_S = 300.0

_SEVERITY_COUNTERS = {"HIGH": "error_count", "MEDIUM": "warning_count", "LOW": "info_count"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_seconds(value: float) -> str:
    return f"{value:g}"


class CitationCheckStore:
    """Orchestrates citation checks: dedup, lifecycle, persistence and queries.

    Every processing-field write goes through the repository's guarded update,
    so a check that was cancelled or superseded is never overwritten by a
    late-running task.
    """

    def __init__(
        self,
        *,
        checks_repository: Any | None = None,
        issues_repository: Any | None = None,
        engine: AnalysisEngine,
        context_sources: ContextSourceProvider,
        dispatcher: Any | None = None,
        freshness_window_s: float = 3600.0,
        engine_timeout_s: float = 600.0,
        stale_check_s: float | None = None,
    ) -> None:
        self.checks: dict[str, dict[str, Any]] = {}
        self.issues: dict[str, dict[str, Any]] = {}
        self.checks_repository = checks_repository or InMemoryChecksRepository(self.checks)
        self.issues_repository = issues_repository or InMemoryIssuesRepository(self.issues)
        self.engine = engine
        self.context_sources = context_sources
        self.dispatcher = dispatcher if dispatcher is not None else ThreadPoolDispatcher()
        self.freshness_window_s = max(0.0, float(freshness_window_s))
        self.engine_timeout_s = max(0.0, float(engine_timeout_s))
        if stale_check_s is None:
            stale_check_s = self.engine_timeout_s + ABANDONED_MARGIN_S if self.engine_timeout_s > 0 else 0.0
        self.stale_check_s = max(0.0, float(stale_check_s))
        self._document_locks: dict[str, threading.Lock] = {}
        self._document_locks_guard = threading.Lock()

    def reset(self) -> None:
        self.checks.clear()
        self.issues.clear()
        with self._document_locks_guard:
            self._document_locks.clear()
        reset_sources = getattr(self.context_sources, "reset", None)
        if callable(reset_sources):
            reset_sources()

    @contextmanager
    def _document_lock(self, document_id: str) -> Iterator[None]:
        with self._document_locks_guard:
            lock = self._document_locks.setdefault(document_id, threading.Lock())
        with lock:
            yield

    def _is_fresh(self, check: dict[str, Any]) -> bool:
        updated_at = _parse_iso(check.get("updated_at"))
        if updated_at is None:
            return False
        return datetime.now(UTC) - updated_at < timedelta(seconds=self.freshness_window_s)

    def _is_abandoned(self, check: dict[str, Any]) -> bool:
        """An in-flight check whose last write is older than ``stale_check_s``."""
        if self.stale_check_s <= 0:
            return False
        updated_at = _parse_iso(check.get("updated_at"))
        if updated_at is None:
            return True
        return datetime.now(UTC) - updated_at > timedelta(seconds=self.stale_check_s)

    def _abandon(self, check_id: str, message: str) -> bool:
        failed = self.checks_repository.update(
            check_id=check_id,
            changes={"status": "ERROR", "error_message": message, "updated_at": _utcnow_iso()},
            expected_statuses=ACTIVE_STATUSES,
        )
        if failed is None:
            return False
        logger.warning("check_abandoned check_id=%s reason=%s", check_id, message)
        return True

    def recover_orphaned_checks(self) -> int:
        """Mark checks left QUEUED or RUNNING by a previous process as ERROR.

        Only an in-process dispatcher loses its work on restart; queued work
        survives in the queue backend and is left alone.
        """
        if not getattr(self.dispatcher, "in_process", False):
            return 0
        recovered = 0
        for check in self.checks_repository.list_active():
            if self._abandon(str(check["check_id"]), RESTARTED_MESSAGE):
                recovered += 1
        if recovered:
            logger.info("orphaned_checks_recovered count=%s", recovered)
        return recovered

    def _with_issues(self, check: dict[str, Any]) -> dict[str, Any]:
        out = dict(check)
        out["issues"] = self.issues_repository.list_for_check(check_id=str(check["check_id"]))
        return out

    def _drop_checks(self, check_ids: list[str]) -> None:
        for check_id in check_ids:
            self.issues_repository.delete_for_check(check_id=check_id)

    def start_check(
        self,
        *,
        project_id: str,
        document_id: str,
        content: str,
        filename: str | None = None,
        options: dict[str, Any] | None = None,
        force_recheck: bool = False,
    ) -> dict[str, Any]:
        with self._document_lock(document_id):
            if not force_recheck:
                active = self.checks_repository.find_active_for_document(document_id=document_id)
                if active is not None and self._is_abandoned(active):
                    self._abandon(
                        str(active["check_id"]),
                        f"abandoned: no progress for over {_format_seconds(self.stale_check_s)}s",
                    )
                    active = None
                if active is not None:
                    logger.info(
                        "check_reused_in_flight document_id=%s check_id=%s",
                        document_id,
                        active["check_id"],
                    )
                    return self._with_issues(active)
                latest = self.checks_repository.find_latest_completed_for_document(document_id=document_id)
                if latest is not None and self._is_fresh(latest):
                    logger.info(
                        "check_reused_fresh document_id=%s check_id=%s",
                        document_id,
                        latest["check_id"],
                    )
                    return self._with_issues(latest)

            self._drop_checks(self.checks_repository.delete_completed_for_document(document_id=document_id))
            now = _utcnow_iso()
            check = self.checks_repository.create(
                check={
                    "check_id": f"chk_{uuid.uuid4().hex[:12]}",
                    "project_id": project_id,
                    "document_id": document_id,
                    "filename": filename or DEFAULT_FILENAME,
                    "content": content,
                    "options": dict(options or {}),
                    "status": "QUEUED",
                    "step": "PARSING",
                    "progress_percent": 0,
                    "error_message": None,
                    "summary": None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        logger.info(
            "check_submitted project_id=%s document_id=%s check_id=%s force=%s",
            project_id,
            document_id,
            check["check_id"],
            force_recheck,
        )

        try:
            self.dispatcher.dispatch(check_id=check["check_id"], project_id=project_id, run=self.run_check)
        except DispatchRejected as exc:
            logger.warning("check_dispatch_rejected check_id=%s reason=%s", check["check_id"], exc)
            rejected = self.checks_repository.update(
                check_id=check["check_id"],
                changes={
                    "status": "ERROR",
                    "error_message": DISPATCH_REJECTED_MESSAGE,
                    "updated_at": _utcnow_iso(),
                },
                expected_statuses=("QUEUED",),
            )
            if rejected is not None:
                check = rejected
        current = self.checks_repository.get(check_id=check["check_id"]) or check
        return self._with_issues(current)

    def _status_of(self, check_id: str) -> dict[str, Any]:
        current = self.checks_repository.get(check_id=check_id)
        status = current["status"] if current is not None else "missing"
        return {"check_id": check_id, "final_status": status}

    def _advance(self, check_id: str, *, step: str, progress: int, expected: tuple[str, ...]) -> bool:
        updated = self.checks_repository.update(
            check_id=check_id,
            changes={
                "status": "RUNNING",
                "step": step,
                "progress_percent": progress,
                "updated_at": _utcnow_iso(),
            },
            expected_statuses=expected,
        )
        if updated is None:
            logger.info("check_transition_refused check_id=%s step=%s", check_id, step)
            return False
        return True

    def _fail(self, check_id: str, message: str) -> dict[str, Any]:
        self.checks_repository.update(
            check_id=check_id,
            changes={"status": "ERROR", "error_message": message, "updated_at": _utcnow_iso()},
            expected_statuses=ACTIVE_STATUSES,
        )
        return self._status_of(check_id)

    def run_check(self, *, check_id: str) -> dict[str, Any]:
        check = self.checks_repository.get(check_id=check_id)
        if check is None:
            return {"check_id": check_id, "final_status": "missing"}
        if check["status"] != "QUEUED":
            return {"check_id": check_id, "final_status": check["status"]}
        try:
            return self._process(check)
        except Exception as exc:
            logger.exception("check_processing_failed check_id=%s", check_id)
            try:
                outcome = self._fail(check_id, f"analysis failed: {exc}")
                if outcome["final_status"] == "ERROR":
                    self.issues_repository.delete_for_check(check_id=check_id)
                return outcome
            except Exception:
                logger.exception("check_error_write_failed check_id=%s", check_id)
            raise

    def _process(self, check: dict[str, Any]) -> dict[str, Any]:
        check_id = str(check["check_id"])
        if not self._advance(check_id, step="PARSING", progress=10, expected=("QUEUED",)):
            return self._status_of(check_id)
        if not self._advance(check_id, step="LOCAL_RETRIEVAL", progress=30, expected=("RUNNING",)):
            return self._status_of(check_id)

        try:
            source_ids = self.context_sources.list_source_ids(str(check["project_id"]))
            issues = self._invoke_engine(check, source_ids)
        except EngineFailure as exc:
            logger.warning("check_engine_failed check_id=%s error=%s", check_id, exc)
            return self._fail(check_id, str(exc))

        if (check.get("options") or {}).get("check_web"):
            logger.info("check_web_retrieval check_id=%s", check_id)
        if not self._advance(check_id, step="WEB_RETRIEVAL", progress=60, expected=("RUNNING",)):
            return self._status_of(check_id)
        if not self._advance(check_id, step="SAVING", progress=80, expected=("RUNNING",)):
            return self._status_of(check_id)
        return self._finalize(check, issues)

    def _invoke_engine(self, check: dict[str, Any], source_ids: list[str]) -> list[AnalysisIssue]:
        options = dict(check.get("options") or {})
        context = AnalysisContext(
            check_id=str(check["check_id"]),
            project_id=str(check["project_id"]),
            document_id=str(check["document_id"]),
            filename=str(check.get("filename") or DEFAULT_FILENAME),
            options=options,
        )

        def invoke() -> object:
            return self.engine.analyze(
                context=context,
                document_text=str(check.get("content") or ""),
                candidate_source_ids=list(source_ids),
                enable_web_search=bool(options.get("check_web", False)),
            )

        if self.engine_timeout_s <= 0:
            return coerce_issues(invoke())
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="citecheck-engine")
        try:
            future = executor.submit(invoke)
            try:
                raw = future.result(timeout=self.engine_timeout_s)
            except FutureTimeoutError as exc:
                raise EngineFailure(
                    f"analysis timed out after {_format_seconds(self.engine_timeout_s)}s"
                ) from exc
        finally:
            # the engine thread cannot be interrupted; only stop waiting for it
            executor.shutdown(wait=False, cancel_futures=True)
        return coerce_issues(raw)

    @staticmethod
    def _issue_rows(check: dict[str, Any], issues: list[AnalysisIssue]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for ordinal, issue in enumerate(issues):
            issue_id = f"iss_{uuid.uuid4().hex[:12]}"
            rows.append(
                {
                    "issue_id": issue_id,
                    "check_id": check["check_id"],
                    "project_id": check["project_id"],
                    "document_id": check["document_id"],
                    "ordinal": ordinal,
                    "issue_type": issue.issue_type,
                    "severity": issue.severity,
                    "from_pos": issue.from_pos,
                    "to_pos": issue.to_pos,
                    "line_start": issue.line_start,
                    "line_end": issue.line_end,
                    "snippet": issue.snippet,
                    "cited_keys": list(issue.cited_keys),
                    "suggestions": list(issue.suggestions),
                    "resolved": False,
                    "evidence": [
                        {
                            "evidence_id": f"evd_{uuid.uuid4().hex[:12]}",
                            "issue_id": issue_id,
                            "ordinal": idx,
                            "source": dict(ev.source),
                            "matched_text": ev.matched_text,
                            "similarity": ev.similarity,
                            "support_score": ev.support_score,
                            "extracted_context": ev.extracted_context,
                        }
                        for idx, ev in enumerate(issue.evidence)
                    ],
                }
            )
        return rows

    @staticmethod
    def _summarize(rows: list[dict[str, Any]], *, completed_at: str) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "total_issues": len(rows),
            "error_count": 0,
            "warning_count": 0,
            "info_count": 0,
            "completed_at": completed_at,
        }
        for row in rows:
            counter = _SEVERITY_COUNTERS.get(str(row.get("severity")))
            if counter is not None:
                summary[counter] += 1
        return summary

    def _finalize(self, check: dict[str, Any], issues: list[AnalysisIssue]) -> dict[str, Any]:
        check_id = str(check["check_id"])
        document_id = str(check["document_id"])
        with self._document_lock(document_id):
            current = self.checks_repository.get(check_id=check_id)
            if current is None or current["status"] != "RUNNING":
                return self._status_of(check_id)

            newest_done = self.checks_repository.find_latest_completed_for_document(document_id=document_id)
            if (
                newest_done is not None
                and newest_done["check_id"] != check_id
                and int(newest_done["seq"]) > int(current["seq"])
            ):
                logger.warning(
                    "check_superseded check_id=%s newer_check_id=%s",
                    check_id,
                    newest_done["check_id"],
                )
                return self._fail(check_id, f"superseded by newer check {newest_done['check_id']}")

            rows = self._issue_rows(current, issues)
            self.issues_repository.insert_batch(check_id=check_id, issues=rows)
            now = _utcnow_iso()
            done = self.checks_repository.update(
                check_id=check_id,
                changes={
                    "status": "DONE",
                    "step": "DONE",
                    "progress_percent": 100,
                    "summary": self._summarize(rows, completed_at=now),
                    "updated_at": now,
                },
                expected_statuses=("RUNNING",),
            )
            if done is None:
                self.issues_repository.delete_for_check(check_id=check_id)
                return self._status_of(check_id)
            self._drop_checks(
                self.checks_repository.delete_completed_for_document(
                    document_id=document_id,
                    exclude_check_id=check_id,
                )
            )
        logger.info("check_done check_id=%s total_issues=%s", check_id, len(rows))
        return {"check_id": check_id, "final_status": "DONE"}

    def cancel_check(self, *, check_id: str) -> dict[str, Any] | None:
        check = self.checks_repository.get(check_id=check_id)
        if check is None:
            return None
        if check["status"] in TERMINAL_STATUSES:
            return {"check_id": check_id, "status": check["status"], "cancelled": False}
        updated = self.checks_repository.update(
            check_id=check_id,
            changes={"status": "ERROR", "error_message": CANCELLED_MESSAGE, "updated_at": _utcnow_iso()},
            expected_statuses=ACTIVE_STATUSES,
        )
        if updated is None:
            current = self.checks_repository.get(check_id=check_id)
            status = current["status"] if current is not None else check["status"]
            return {"check_id": check_id, "status": status, "cancelled": False}
        logger.info("check_cancelled check_id=%s", check_id)
        return {"check_id": check_id, "status": updated["status"], "cancelled": True}

    def set_issue_resolved(self, *, issue_id: str, resolved: bool) -> dict[str, Any] | None:
        return self.issues_repository.set_resolved(issue_id=issue_id, resolved=bool(resolved))

    def get_check(self, *, check_id: str) -> dict[str, Any] | None:
        check = self.checks_repository.get(check_id=check_id)
        return self._with_issues(check) if check is not None else None

    def get_latest_for_document(self, *, document_id: str) -> dict[str, Any] | None:
        check = self.checks_repository.find_latest_for_document(document_id=document_id)
        return self._with_issues(check) if check is not None else None

    def list_for_project(self, *, project_id: str) -> list[dict[str, Any]]:
        return self.checks_repository.list_for_project(project_id=project_id)

    def purge_check(self, *, check_id: str) -> bool:
        self.issues_repository.delete_for_check(check_id=check_id)
        deleted = self.checks_repository.delete(check_id=check_id)
        if deleted:
            logger.info("check_purged check_id=%s", check_id)
        return deleted


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_store_from_env(environ: Mapping[str, str] | None = None) -> CitationCheckStore:
    env = os.environ if environ is None else environ
    backend = env.get("CITECHECK_STORE_BACKEND", "memory").strip().lower()
    if env.get("CITECHECK_DISPATCH_MODE", "pool").strip().lower() == "queue":
        # an out-of-process worker sees neither this process's memory store nor its memory queue
        if backend != "postgres":
            raise ValueError("CITECHECK_DISPATCH_MODE=queue requires CITECHECK_STORE_BACKEND=postgres")
        if env.get("CITECHECK_QUEUE_BACKEND", "memory").strip().lower() != "redis":
            raise ValueError("CITECHECK_DISPATCH_MODE=queue requires CITECHECK_QUEUE_BACKEND=redis")
    engine_timeout_s = _env_float(env, "CITECHECK_ENGINE_TIMEOUT_S", default=600.0)
    stale_default = engine_timeout_s + ABANDONED_MARGIN_S if engine_timeout_s > 0 else 0.0
    common: dict[str, Any] = {
        "engine": create_engine_from_env(env),
        "context_sources": create_context_sources_from_env(env),
        "dispatcher": create_dispatcher_from_env(env),
        "freshness_window_s": _env_float(env, "CITECHECK_FRESHNESS_WINDOW_S", default=3600.0),
        "engine_timeout_s": engine_timeout_s,
        "stale_check_s": _env_float(env, "CITECHECK_STALE_CHECK_S", default=stale_default),
    }
    if backend == "memory":
        return CitationCheckStore(**common)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when CITECHECK_STORE_BACKEND=postgres")
        tx_runner = PostgresTxRunner(dsn)
        checks_repository = PostgresChecksRepository(tx_runner=tx_runner)
        issues_repository = PostgresIssuesRepository(tx_runner=tx_runner)
        checks_repository.ensure_schema()
        issues_repository.ensure_schema()
        return CitationCheckStore(
            checks_repository=checks_repository,
            issues_repository=issues_repository,
            **common,
        )
    raise RuntimeError(f"unsupported store backend: {backend}")


store = create_store_from_env()
