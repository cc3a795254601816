from __future__ import annotations

import json
from urllib.error import URLError

import pytest

from citecheck.context_sources import HttpContextSources, InMemoryContextSources, create_context_sources_from_env
from citecheck.engine import (
    AnalysisContext,
    AnalysisIssue,
    HttpAnalysisEngine,
    UnconfiguredAnalysisEngine,
    coerce_issues,
    create_engine_from_env,
)
from citecheck.errors import EngineFailure


class FakeResponse:
    def __init__(self, payload) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _context() -> AnalysisContext:
    return AnalysisContext(
        check_id="chk_eng",
        project_id="prj_eng",
        document_id="doc_eng",
        filename="paper.tex",
        options={"similarity_threshold": 0.8},
    )


def test_http_engine_posts_contract_payload_and_parses_issues(monkeypatch):
    captured: dict = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["timeout"] = timeout
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return FakeResponse(
            {
                "issues": [
                    {
                        "type": "missing-citation",
                        "severity": "high",
                        "from_pos": 0,
                        "to_pos": 12,
                        "line_start": 1,
                        "line_end": 1,
                        "snippet": "It is known",
                        "suggestions": ["add a source"],
                    }
                ]
            }
        )

    monkeypatch.setattr("citecheck.engine.request.urlopen", fake_urlopen)
    engine = HttpAnalysisEngine(base_url="http://engine.local/", timeout_s=30)
    issues = engine.analyze(
        context=_context(),
        document_text="It is known that...",
        candidate_source_ids=["src_1"],
        enable_web_search=True,
    )

    assert captured["url"] == "http://engine.local/analyze"
    assert captured["method"] == "POST"
    assert captured["timeout"] == 30
    body = captured["body"]
    assert body["check_id"] == "chk_eng"
    assert body["content"] == "It is known that..."
    assert body["candidate_source_ids"] == ["src_1"]
    assert body["enable_web_search"] is True
    assert body["options"] == {"similarity_threshold": 0.8}
    assert len(issues) == 1
    assert issues[0].issue_type == "missing-citation"
    assert issues[0].severity == "HIGH"
    assert issues[0].evidence == []


def test_http_engine_wraps_transport_errors(monkeypatch):
    def fake_urlopen(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr("citecheck.engine.request.urlopen", fake_urlopen)
    engine = HttpAnalysisEngine(base_url="http://engine.local")
    with pytest.raises(EngineFailure, match="analysis engine request failed"):
        engine.analyze(context=_context(), document_text="", candidate_source_ids=[], enable_web_search=False)


def test_http_engine_rejects_response_without_issues(monkeypatch):
    monkeypatch.setattr("citecheck.engine.request.urlopen", lambda req, timeout: FakeResponse({"result": []}))
    engine = HttpAnalysisEngine(base_url="http://engine.local")
    with pytest.raises(EngineFailure, match="missing 'issues'"):
        engine.analyze(context=_context(), document_text="", candidate_source_ids=[], enable_web_search=False)


def test_coerce_issues_validates_scores_and_shape():
    good = {
        "issue_type": "weak-citation",
        "severity": "LOW",
        "from_pos": 1,
        "to_pos": 2,
        "line_start": 1,
        "line_end": 1,
        "snippet": "x",
        "evidence": [{"matched_text": "y", "similarity": 0.5, "support_score": 0.9}],
    }
    ready = AnalysisIssue.model_validate(good)
    assert coerce_issues([good, ready])[1] is ready

    with pytest.raises(EngineFailure, match="expected a list"):
        coerce_issues({"issues": []})
    bad_score = dict(good, evidence=[{"matched_text": "y", "similarity": 1.5, "support_score": 0.1}])
    with pytest.raises(EngineFailure, match="invalid issue #0"):
        coerce_issues([bad_score])
    bad_severity = dict(good, severity="CRITICAL")
    with pytest.raises(EngineFailure, match="invalid issue #1"):
        coerce_issues([good, bad_severity])


def test_engine_factory_defaults_to_unconfigured():
    engine = create_engine_from_env({})
    assert isinstance(engine, UnconfiguredAnalysisEngine)
    with pytest.raises(EngineFailure, match="not configured"):
        engine.analyze(context=_context(), document_text="", candidate_source_ids=[], enable_web_search=False)

    configured = create_engine_from_env({"CITECHECK_ENGINE_URL": "http://engine.local"})
    assert isinstance(configured, HttpAnalysisEngine)


def test_http_context_sources_fetches_project_selection(monkeypatch):
    captured: dict = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        return FakeResponse({"source_ids": ["src_1", "src_2"]})

    monkeypatch.setattr("citecheck.context_sources.request.urlopen", fake_urlopen)
    provider = HttpContextSources(base_url="http://sources.local")
    assert provider.list_source_ids("prj/1") == ["src_1", "src_2"]
    assert captured["url"] == "http://sources.local/projects/prj%2F1/context-sources"


def test_http_context_sources_failure_is_an_engine_failure(monkeypatch):
    def fake_urlopen(req, timeout):
        raise URLError("down")

    monkeypatch.setattr("citecheck.context_sources.request.urlopen", fake_urlopen)
    provider = HttpContextSources(base_url="http://sources.local")
    with pytest.raises(EngineFailure, match="context sources unavailable"):
        provider.list_source_ids("prj_1")


def test_context_sources_factory_and_memory_provider():
    provider = create_context_sources_from_env({})
    assert isinstance(provider, InMemoryContextSources)
    provider.set_source_ids("prj_1", ["src_1", ""])
    assert provider.list_source_ids("prj_1") == ["src_1"]
    assert provider.list_source_ids("prj_2") == []
    assert isinstance(
        create_context_sources_from_env({"CITECHECK_CONTEXT_SOURCES_URL": "http://sources.local"}),
        HttpContextSources,
    )
