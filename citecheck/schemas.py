from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CheckOptions(BaseModel):
    check_local: bool = True
    check_web: bool = False
    similarity_threshold: float | None = Field(default=None, ge=0, le=1)
    max_evidence_per_issue: int | None = Field(default=None, ge=1)
    enable_plagiarism_check: bool = False
    strict_mode: bool = False


class StartCheckRequest(BaseModel):
    project_id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    content: str
    filename: str | None = None
    force_recheck: bool = False
    options: CheckOptions = Field(default_factory=CheckOptions)


class IssueResolutionRequest(BaseModel):
    resolved: bool


def evidence_to_dto(evidence: dict[str, Any]) -> dict[str, Any]:
    return {
        "evidence_id": evidence.get("evidence_id"),
        "source": dict(evidence.get("source") or {}),
        "matched_text": evidence.get("matched_text", ""),
        "similarity": evidence.get("similarity"),
        "support_score": evidence.get("support_score"),
        "extracted_context": evidence.get("extracted_context"),
    }


def issue_to_dto(issue: dict[str, Any]) -> dict[str, Any]:
    from_pos = int(issue.get("from_pos", 0))
    return {
        "issue_id": issue.get("issue_id"),
        "issue_type": issue.get("issue_type"),
        "severity": issue.get("severity"),
        "citation_text": issue.get("snippet", ""),
        "position": from_pos,
        "length": int(issue.get("to_pos", from_pos)) - from_pos,
        "line_start": issue.get("line_start"),
        "line_end": issue.get("line_end"),
        "cited_keys": list(issue.get("cited_keys") or []),
        "suggestions": list(issue.get("suggestions") or []),
        "resolved": bool(issue.get("resolved", False)),
        "evidence": [evidence_to_dto(e) for e in issue.get("evidence") or []],
    }


def check_to_dto(check: dict[str, Any], *, include_issues: bool = True) -> dict[str, Any]:
    """Public view of a check; the submitted content never leaves the service."""
    status = check.get("status")
    data: dict[str, Any] = {
        "check_id": check.get("check_id"),
        "project_id": check.get("project_id"),
        "document_id": check.get("document_id"),
        "filename": check.get("filename"),
        "status": status,
        "current_step": check.get("step"),
        "progress_percent": int(check.get("progress_percent", 0)),
        "message": check.get("error_message"),
        "created_at": check.get("created_at"),
        "updated_at": check.get("updated_at"),
        "completed_at": check.get("updated_at") if status == "DONE" else None,
        "summary": dict(check["summary"]) if check.get("summary") else None,
    }
    if include_issues:
        data["issues"] = [issue_to_dto(i) for i in check.get("issues") or []]
    return data


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
