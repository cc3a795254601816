from __future__ import annotations

import threading

import pytest
from conftest import make_issue

from citecheck.errors import EngineFailure, PersistenceError
from citecheck.store import store


class RecordingChecks:
    def __init__(self, inner):
        self.inner = inner
        self.writes: list[tuple[str, str, int]] = []

    def update(self, **kwargs):
        result = self.inner.update(**kwargs)
        if result is not None:
            self.writes.append((result["status"], result["step"], result["progress_percent"]))
        return result

    def __getattr__(self, name):
        return getattr(self.inner, name)


class FailingIssues:
    def __init__(self, inner):
        self.inner = inner

    def insert_batch(self, *, check_id, issues):
        raise PersistenceError("postgres unavailable: DataError")

    def __getattr__(self, name):
        return getattr(self.inner, name)


def _start(**overrides) -> dict:
    params = {
        "project_id": "prj_sm",
        "document_id": "doc_sm",
        "content": "\\begin{document}Claim \\cite{smith2020}.\\end{document}",
    }
    params.update(overrides)
    return store.start_check(**params)


def test_new_check_starts_queued_with_default_filename(dispatcher):
    check = _start()
    assert check["status"] == "QUEUED"
    assert check["step"] == "PARSING"
    assert check["progress_percent"] == 0
    assert check["filename"] == "document.tex"
    assert check["check_id"].startswith("chk_")
    assert check["issues"] == []
    assert [c for c, _ in dispatcher.pending] == [check["check_id"]]


def test_run_check_walks_steps_with_monotonic_progress(monkeypatch, engine, dispatcher):
    recorder = RecordingChecks(store.checks_repository)
    monkeypatch.setattr(store, "checks_repository", recorder)
    engine.issues = [
        make_issue(severity="HIGH"),
        make_issue(severity="medium"),
        make_issue(severity="LOW"),
        make_issue(severity="HIGH"),
    ]
    check = _start()
    results = dispatcher.run_all()

    assert results == [{"check_id": check["check_id"], "final_status": "DONE"}]
    assert recorder.writes == [
        ("RUNNING", "PARSING", 10),
        ("RUNNING", "LOCAL_RETRIEVAL", 30),
        ("RUNNING", "WEB_RETRIEVAL", 60),
        ("RUNNING", "SAVING", 80),
        ("DONE", "DONE", 100),
    ]
    done = store.get_check(check_id=check["check_id"])
    summary = done["summary"]
    assert summary["total_issues"] == 4
    assert summary["error_count"] == 2
    assert summary["warning_count"] == 1
    assert summary["info_count"] == 1
    assert summary["completed_at"] == done["updated_at"]
    assert [i["ordinal"] for i in done["issues"]] == [0, 1, 2, 3]
    assert all(i["issue_id"].startswith("iss_") for i in done["issues"])
    assert done["issues"][0]["evidence"][0]["evidence_id"].startswith("evd_")


def test_engine_observes_running_local_retrieval_state(engine, dispatcher):
    seen: list[tuple[str, str, int]] = []

    class PeekingEngine:
        def analyze(self, *, context, document_text, candidate_source_ids, enable_web_search):
            row = store.checks_repository.get(check_id=context.check_id)
            seen.append((row["status"], row["step"], row["progress_percent"]))
            return []

    store.engine = PeekingEngine()
    _start()
    dispatcher.run_all()
    assert seen == [("RUNNING", "LOCAL_RETRIEVAL", 30)]


def test_engine_receives_content_sources_and_options(engine, dispatcher):
    store.context_sources.set_source_ids("prj_sm", ["src_1", "src_2"])
    check = _start(filename="paper.tex", options={"check_web": True, "strict_mode": True})
    dispatcher.run_all()

    call = engine.calls[0]
    assert call["document_text"].startswith("\\begin{document}")
    assert call["candidate_source_ids"] == ["src_1", "src_2"]
    assert call["enable_web_search"] is True
    assert call["context"].check_id == check["check_id"]
    assert call["context"].filename == "paper.tex"
    assert call["context"].options["strict_mode"] is True


def test_engine_failure_marks_check_error_and_keeps_progress(engine, dispatcher):
    engine.error = EngineFailure("engine exploded")
    check = _start()
    results = dispatcher.run_all()
    assert results[0]["final_status"] == "ERROR"

    failed = store.get_check(check_id=check["check_id"])
    assert failed["status"] == "ERROR"
    assert failed["error_message"] == "engine exploded"
    assert failed["progress_percent"] == 30
    assert failed["issues"] == []


def test_unexpected_engine_exception_is_recorded(engine, dispatcher):
    engine.error = KeyError("boom")
    check = _start()
    dispatcher.run_all()
    failed = store.get_check(check_id=check["check_id"])
    assert failed["status"] == "ERROR"
    assert failed["error_message"].startswith("analysis failed:")


def test_invalid_engine_output_is_an_engine_failure(engine, dispatcher):
    engine.issues = [make_issue(from_pos=50, to_pos=10)]
    check = _start()
    dispatcher.run_all()
    failed = store.get_check(check_id=check["check_id"])
    assert failed["status"] == "ERROR"
    assert "invalid issue #0" in failed["error_message"]


def test_engine_deadline_marks_check_error(monkeypatch, engine, dispatcher):
    monkeypatch.setattr(store, "engine_timeout_s", 0.2)
    engine.gate = threading.Event()
    check = _start()
    results = dispatcher.run_all()
    engine.gate.set()

    assert results[0]["final_status"] == "ERROR"
    failed = store.get_check(check_id=check["check_id"])
    assert failed["error_message"] == "analysis timed out after 0.2s"
    assert failed["issues"] == []


def test_cancel_during_analysis_discards_late_results(engine, dispatcher):
    engine.gate = threading.Event()
    engine.issues = [make_issue()]
    check = _start()
    _, run = dispatcher.pending.pop(0)

    outcome: dict = {}
    worker = threading.Thread(target=lambda: outcome.update(run(check_id=check["check_id"])))
    worker.start()
    assert engine.started.wait(timeout=5)

    cancelled = store.cancel_check(check_id=check["check_id"])
    assert cancelled == {"check_id": check["check_id"], "status": "ERROR", "cancelled": True}
    engine.gate.set()
    worker.join(timeout=5)

    assert outcome["final_status"] == "ERROR"
    final = store.get_check(check_id=check["check_id"])
    assert final["error_message"] == "cancelled by user"
    assert final["progress_percent"] == 30
    assert final["issues"] == []
    assert store.issues == {}


def test_cancel_is_a_noop_on_terminal_checks(dispatcher):
    check = _start()
    dispatcher.run_all()
    result = store.cancel_check(check_id=check["check_id"])
    assert result == {"check_id": check["check_id"], "status": "DONE", "cancelled": False}
    assert store.get_check(check_id=check["check_id"])["status"] == "DONE"
    assert store.cancel_check(check_id="chk_unknown") is None


def test_cancelled_queued_check_is_never_run(engine, dispatcher):
    check = _start()
    store.cancel_check(check_id=check["check_id"])
    results = dispatcher.run_all()
    assert results == [{"check_id": check["check_id"], "final_status": "ERROR"}]
    assert engine.calls == []


def test_run_check_is_a_noop_for_unknown_or_started_checks(dispatcher):
    assert store.run_check(check_id="chk_unknown") == {"check_id": "chk_unknown", "final_status": "missing"}
    check = _start()
    dispatcher.run_all()
    assert store.run_check(check_id=check["check_id"]) == {"check_id": check["check_id"], "final_status": "DONE"}


def test_resolution_does_not_touch_check_state(engine, dispatcher):
    engine.issues = [make_issue()]
    check = _start()
    dispatcher.run_all()
    before = store.get_check(check_id=check["check_id"])
    issue_id = before["issues"][0]["issue_id"]

    first = store.set_issue_resolved(issue_id=issue_id, resolved=True)
    second = store.set_issue_resolved(issue_id=issue_id, resolved=True)
    assert first["resolved"] is True
    assert second["resolved"] is True

    after = store.get_check(check_id=check["check_id"])
    assert after["status"] == before["status"]
    assert after["updated_at"] == before["updated_at"]
    assert after["summary"] == before["summary"]
    assert store.set_issue_resolved(issue_id="iss_unknown", resolved=True) is None


def test_purge_removes_check_with_issues(engine, dispatcher):
    engine.issues = [make_issue(), make_issue()]
    check = _start()
    dispatcher.run_all()
    assert store.purge_check(check_id=check["check_id"]) is True
    assert store.get_check(check_id=check["check_id"]) is None
    assert store.issues == {}
    assert store.purge_check(check_id=check["check_id"]) is False


def test_storage_failure_while_saving_marks_check_error(monkeypatch, engine, dispatcher):
    inner = store.issues_repository
    monkeypatch.setattr(store, "issues_repository", FailingIssues(inner))
    engine.issues = [make_issue()]
    check = _start()
    results = dispatcher.run_all()

    assert results == [{"check_id": check["check_id"], "final_status": "ERROR"}]
    failed = store.checks_repository.get(check_id=check["check_id"])
    assert failed["status"] == "ERROR"
    assert failed["error_message"] == "analysis failed: postgres unavailable: DataError"
    assert failed["progress_percent"] == 80

    # the document is not stuck behind the failed check
    monkeypatch.setattr(store, "issues_repository", inner)
    again = _start()
    assert again["check_id"] != check["check_id"]
    assert again["status"] == "QUEUED"


def test_failed_completion_write_discards_saved_issues(monkeypatch, engine, dispatcher):
    class DoneWriteFails:
        def __init__(self, inner):
            self.inner = inner

        def update(self, **kwargs):
            if kwargs["changes"].get("status") == "DONE":
                raise PersistenceError("postgres unavailable: OperationalError")
            return self.inner.update(**kwargs)

        def __getattr__(self, name):
            return getattr(self.inner, name)

    monkeypatch.setattr(store, "checks_repository", DoneWriteFails(store.checks_repository))
    engine.issues = [make_issue(), make_issue()]
    check = _start()
    results = dispatcher.run_all()

    assert results[0]["final_status"] == "ERROR"
    failed = store.get_check(check_id=check["check_id"])
    assert failed["error_message"].startswith("analysis failed:")
    assert failed["issues"] == []
    assert store.issues == {}


def test_original_error_surfaces_when_error_state_cannot_be_written(monkeypatch, engine, dispatcher):
    class StorageDown:
        def __init__(self, inner):
            self.inner = inner

        def update(self, **kwargs):
            raise PersistenceError("postgres unavailable: OperationalError")

        def __getattr__(self, name):
            return getattr(self.inner, name)

    check = _start()
    dispatcher.pending.clear()
    monkeypatch.setattr(store, "checks_repository", StorageDown(store.checks_repository))

    with pytest.raises(PersistenceError, match="OperationalError"):
        store.run_check(check_id=check["check_id"])
    assert engine.calls == []
    assert store.checks[check["check_id"]]["status"] == "QUEUED"
