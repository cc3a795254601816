import pathlib
import sys
import threading

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from citecheck.dispatcher import DispatchRejected
from citecheck.main import create_app
from citecheck.store import store


class ScriptedEngine:
    """Returns whatever the test put in ``issues``; optionally blocks on ``gate``."""

    def __init__(self) -> None:
        self.issues: list = []
        self.error: Exception | None = None
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.calls: list[dict] = []

    def analyze(self, *, context, document_text, candidate_source_ids, enable_web_search):
        self.calls.append(
            {
                "context": context,
                "document_text": document_text,
                "candidate_source_ids": list(candidate_source_ids),
                "enable_web_search": enable_web_search,
            }
        )
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return list(self.issues)


class ManualDispatcher:
    """Collects dispatched checks; tests decide when they run."""

    in_process = True

    def __init__(self) -> None:
        self.pending: list[tuple[str, object]] = []
        self.reject = False
        self._lock = threading.Lock()

    def dispatch(self, *, check_id, project_id, run):
        if self.reject:
            raise DispatchRejected("worker queue is full")
        with self._lock:
            self.pending.append((check_id, run))

    def run_all(self) -> list[dict]:
        results = []
        while True:
            with self._lock:
                if not self.pending:
                    break
                check_id, run = self.pending.pop(0)
            results.append(run(check_id=check_id))
        return results

    def drain(self, timeout=None) -> bool:
        return not self.pending

    def shutdown(self, *, wait_for_running=False) -> None:
        return None


def make_issue(**overrides) -> dict:
    issue = {
        "issue_type": "weak-citation",
        "severity": "MEDIUM",
        "from_pos": 10,
        "to_pos": 42,
        "line_start": 3,
        "line_end": 3,
        "snippet": "as shown by \\cite{smith2020}",
        "cited_keys": ["smith2020"],
        "suggestions": ["cite the replication study", "soften the claim"],
        "evidence": [
            {
                "source": {"source_id": "src_1", "title": "Smith 2020"},
                "matched_text": "results were not replicated",
                "similarity": 0.81,
                "support_score": 0.35,
                "extracted_context": "p. 4",
            }
        ],
    }
    issue.update(overrides)
    return issue


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def dispatcher() -> ManualDispatcher:
    return ManualDispatcher()


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch, engine: ScriptedEngine, dispatcher: ManualDispatcher):
    monkeypatch.setattr(store, "engine", engine)
    monkeypatch.setattr(store, "dispatcher", dispatcher)
    monkeypatch.setattr(store, "freshness_window_s", 3600.0)
    monkeypatch.setattr(store, "engine_timeout_s", 5.0)
    monkeypatch.setattr(store, "stale_check_s", 900.0)
    store.reset()
    yield
    if engine.gate is not None:
        engine.gate.set()
    store.reset()


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app())
