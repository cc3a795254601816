"""Boundary to the external Analysis Engine.

The engine does the actual text-to-source matching. The orchestrator only
hands it the document and the candidate source ids, then persists whatever
issues come back, so everything here is about the contract, not the matching.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol
from urllib import request
from urllib.error import URLError

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from citecheck.errors import EngineFailure

logger = logging.getLogger(__name__)


class AnalysisEvidence(BaseModel):
    source: dict[str, Any] = Field(default_factory=dict)
    matched_text: str = ""
    similarity: float = Field(ge=0, le=1)
    support_score: float = Field(ge=0, le=1)
    extracted_context: str | None = None


class AnalysisIssue(BaseModel):
    issue_type: str = Field(min_length=1, validation_alias=AliasChoices("issue_type", "type"))
    severity: Literal["HIGH", "MEDIUM", "LOW"]
    from_pos: int = Field(ge=0)
    to_pos: int = Field(ge=0)
    line_start: int = Field(ge=0)
    line_end: int = Field(ge=0)
    snippet: str
    cited_keys: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    evidence: list[AnalysisEvidence] = Field(default_factory=list)

    @field_validator("severity", mode="before")
    @classmethod
    def _upper_severity(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _ordered_span(self) -> "AnalysisIssue":
        if self.to_pos < self.from_pos:
            raise ValueError("to_pos must not precede from_pos")
        if self.line_end < self.line_start:
            raise ValueError("line_end must not precede line_start")
        return self


@dataclass(frozen=True)
class AnalysisContext:
    check_id: str
    project_id: str
    document_id: str
    filename: str
    options: dict[str, Any] = field(default_factory=dict)


class AnalysisEngine(Protocol):
    def analyze(
        self,
        *,
        context: AnalysisContext,
        document_text: str,
        candidate_source_ids: list[str],
        enable_web_search: bool,
    ) -> list[AnalysisIssue]: ...


def coerce_issues(raw: object) -> list[AnalysisIssue]:
    """Validate engine output into ``AnalysisIssue`` models."""
    if not isinstance(raw, list):
        raise EngineFailure(f"engine returned {type(raw).__name__}, expected a list of issues")
    issues: list[AnalysisIssue] = []
    for idx, item in enumerate(raw):
        if isinstance(item, AnalysisIssue):
            issues.append(item)
            continue
        try:
            issues.append(AnalysisIssue.model_validate(item))
        except ValidationError as exc:
            raise EngineFailure(f"engine returned invalid issue #{idx}: {exc.error_count()} validation errors") from exc
    return issues


class UnconfiguredAnalysisEngine:
    def analyze(
        self,
        *,
        context: AnalysisContext,
        document_text: str,
        candidate_source_ids: list[str],
        enable_web_search: bool,
    ) -> list[AnalysisIssue]:
        raise EngineFailure("analysis engine is not configured")


class HttpAnalysisEngine:
    """Engine reached over HTTP: ``POST <base_url>/analyze`` returning ``{"issues": [...]}``."""

    def __init__(self, *, base_url: str, timeout_s: float = 300.0) -> None:
        if not base_url.strip():
            raise ValueError("engine base_url must not be empty")
        self._endpoint = base_url.strip().rstrip("/") + "/analyze"
        self._timeout_s = max(1.0, float(timeout_s))

    @staticmethod
    def _post_json(
        *,
        endpoint: str,
        payload: dict[str, Any],
        timeout_s: float,
    ) -> object:
        body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
        req = request.Request(
            endpoint,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read().decode("utf-8")
        return json.loads(raw)

    def analyze(
        self,
        *,
        context: AnalysisContext,
        document_text: str,
        candidate_source_ids: list[str],
        enable_web_search: bool,
    ) -> list[AnalysisIssue]:
        payload = {
            "check_id": context.check_id,
            "project_id": context.project_id,
            "document_id": context.document_id,
            "filename": context.filename,
            "options": dict(context.options),
            "content": document_text,
            "candidate_source_ids": list(candidate_source_ids),
            "enable_web_search": bool(enable_web_search),
        }
        try:
            result = self._post_json(endpoint=self._endpoint, payload=payload, timeout_s=self._timeout_s)
        except (TimeoutError, URLError, ValueError, OSError) as exc:
            logger.warning("engine_call_failed check_id=%s error=%s", context.check_id, exc)
            raise EngineFailure(f"analysis engine request failed: {exc}") from exc
        if not isinstance(result, dict) or "issues" not in result:
            raise EngineFailure("analysis engine response is missing 'issues'")
        return coerce_issues(result["issues"])


def create_engine_from_env(environ: Mapping[str, str] | None = None) -> AnalysisEngine:
    env = os.environ if environ is None else environ
    base_url = env.get("CITECHECK_ENGINE_URL", "").strip()
    if not base_url:
        return UnconfiguredAnalysisEngine()
    try:
        timeout_s = float(env.get("CITECHECK_ENGINE_HTTP_TIMEOUT_S", "300"))
    except ValueError:
        timeout_s = 300.0
    return HttpAnalysisEngine(base_url=base_url, timeout_s=timeout_s)
