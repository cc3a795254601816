from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from citecheck.errors import NotFoundError
from citecheck.routes._deps import trace_id_from_request
from citecheck.schemas import (
    IssueResolutionRequest,
    StartCheckRequest,
    check_to_dto,
    success_envelope,
)
from citecheck.store import store

router = APIRouter(prefix="/api/v1/citations", tags=["citations"])


def _check_not_found(check_id: str) -> NotFoundError:
    return NotFoundError(code="CHECK_NOT_FOUND", message=f"check not found: {check_id}")


@router.post("/jobs")
def start_check(payload: StartCheckRequest, request: Request):
    check = store.start_check(
        project_id=payload.project_id,
        document_id=payload.document_id,
        content=payload.content,
        filename=payload.filename,
        options=payload.options.model_dump(),
        force_recheck=payload.force_recheck,
    )
    return JSONResponse(
        status_code=202,
        content=success_envelope(check_to_dto(check), trace_id_from_request(request)),
    )


@router.get("/jobs/{check_id}")
def get_check(check_id: str, request: Request):
    check = store.get_check(check_id=check_id)
    if check is None:
        raise _check_not_found(check_id)
    return success_envelope(check_to_dto(check), trace_id_from_request(request))


@router.post("/jobs/{check_id}/cancel")
def cancel_check(check_id: str, request: Request):
    result = store.cancel_check(check_id=check_id)
    if result is None:
        raise _check_not_found(check_id)
    return success_envelope(result, trace_id_from_request(request))


@router.delete("/jobs/{check_id}")
def purge_check(check_id: str, request: Request):
    if not store.purge_check(check_id=check_id):
        raise _check_not_found(check_id)
    return success_envelope({"check_id": check_id, "deleted": True}, trace_id_from_request(request))


@router.get("/documents/{document_id}")
def get_latest_for_document(document_id: str, request: Request):
    check = store.get_latest_for_document(document_id=document_id)
    if check is None:
        raise NotFoundError(code="CHECK_NOT_FOUND", message=f"no check for document: {document_id}")
    return success_envelope(check_to_dto(check), trace_id_from_request(request))


@router.get("/projects/{project_id}")
def list_for_project(project_id: str, request: Request):
    items = [check_to_dto(c, include_issues=False) for c in store.list_for_project(project_id=project_id)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.put("/issues/{issue_id}")
def set_issue_resolved(issue_id: str, payload: IssueResolutionRequest, request: Request):
    issue = store.set_issue_resolved(issue_id=issue_id, resolved=payload.resolved)
    if issue is None:
        raise NotFoundError(code="ISSUE_NOT_FOUND", message=f"issue not found: {issue_id}")
    return success_envelope(
        {"issue_id": issue["issue_id"], "resolved": bool(issue["resolved"])},
        trace_id_from_request(request),
    )
