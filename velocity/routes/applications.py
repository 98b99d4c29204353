from __future__ import annotations

from typing import Any

from fastapi import APIRouter, File, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from velocity.errors import ApiError
from velocity.field_extractor import extract_fields
from velocity.models import (
    DECISION_FIELDS,
    EXTRACTION_FIELDS,
    PROCESSING_STAGES,
    STAGE_AI_COMPLETED,
    STAGE_ANALYZING,
    STAGE_PARSING,
    STAGE_PARSING_FAILED,
    WorkerLease,
    to_iso,
    utcnow,
)
from velocity.object_storage import build_object_path
from velocity.routes._deps import services_from_request, trace_id_from_request
from velocity.schemas import (
    CreateApplicationRequest,
    RequeueRequest,
    StatusChangeRequest,
    success_envelope,
)
from velocity.workflow import change_status

router = APIRouter(prefix="/api/applications", tags=["applications"])

# Where an explicit requeue sends a job that reached a terminal stage.
_REQUEUE_TARGET = {
    STAGE_PARSING_FAILED: STAGE_PARSING,
    STAGE_AI_COMPLETED: STAGE_ANALYZING,
}


@router.post("")
def create_application(payload: CreateApplicationRequest, request: Request):
    services = services_from_request(request)
    record = services.jobs.create(fields=payload.model_dump(exclude_none=True))
    return JSONResponse(status_code=201, content=success_envelope(record, trace_id_from_request(request)))


@router.get("")
def list_applications(
    request: Request,
    stage: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    if stage is not None and stage not in PROCESSING_STAGES:
        raise ApiError(
            code="JOB_STAGE_INVALID",
            message=f"invalid processing stage: {stage}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    services = services_from_request(request)
    items = services.jobs.list(stage=stage, limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/{application_id}")
def get_application(application_id: str, request: Request):
    services = services_from_request(request)
    return success_envelope(services.jobs.require(application_id), trace_id_from_request(request))


def _reject_active_lease(record: dict[str, Any]) -> None:
    lease = WorkerLease.from_record(record.get("workerLease"))
    if lease is not None and lease.is_active(utcnow()):
        raise ApiError(
            code="JOB_LEASE_ACTIVE",
            message=f"a worker is processing this application until {to_iso(lease.expires_at)}; retry later",
            error_class="transient",
            retryable=True,
            http_status=409,
        )


@router.post("/{application_id}/documents")
async def upload_application_document(
    application_id: str,
    request: Request,
    file: UploadFile = File(...),
):
    services = services_from_request(request)
    _reject_active_lease(services.jobs.require(application_id))
    content = await file.read()
    filename = file.filename or "document.pdf"
    object_path = services.document_store.upload(
        build_object_path(application_id=application_id, filename=filename),
        content,
        content_type=file.content_type or "application/pdf",
    )
    # A new document invalidates everything derived from the previous one.
    fields: dict[str, Any] = {
        **dict.fromkeys(EXTRACTION_FIELDS),
        **dict.fromkeys(DECISION_FIELDS),
        "objectPath": object_path,
        "documentName": filename,
        "documentSize": len(content),
        "processingStage": STAGE_PARSING,
        "parsingError": None,
        "parsingFailedAt": None,
        "parsingCompletedAt": None,
        "workerLease": None,
        "uploadedAt": to_iso(utcnow()),
    }
    record = services.jobs.update_if(application_id, check=_reject_active_lease, fields=fields)
    return JSONResponse(status_code=202, content=success_envelope(record, trace_id_from_request(request)))


@router.post("/{application_id}/requeue")
def requeue_application(application_id: str, request: Request, payload: RequeueRequest | None = None):
    services = services_from_request(request)
    current = services.jobs.require(application_id)
    stage = str(current.get("processingStage") or "")
    target = _REQUEUE_TARGET.get(stage)
    if target is None:
        raise ApiError(
            code="JOB_REQUEUE_NOT_ALLOWED",
            message=f"cannot requeue a job in stage {stage}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )

    def _check(record: dict[str, Any]) -> None:
        if record.get("processingStage") != stage:
            raise ApiError(
                code="JOB_STAGE_CHANGED",
                message="job stage changed concurrently; retry",
                error_class="transient",
                retryable=True,
                http_status=409,
            )

    fields: dict[str, Any] = {
        "processingStage": target,
        "workerLease": None,
        "requeuedAt": to_iso(utcnow()),
        "requeueReason": payload.reason if payload else "",
    }
    if stage == STAGE_PARSING_FAILED:
        fields["parsingError"] = None
    else:
        fields["lastError"] = None
        fields["error"] = None
    record = services.jobs.update_if(application_id, check=_check, fields=fields)
    return success_envelope(record, trace_id_from_request(request))


@router.patch("/{application_id}/status")
def change_application_status(application_id: str, payload: StatusChangeRequest, request: Request):
    services = services_from_request(request)
    record = change_status(
        services.jobs,
        job_id=application_id,
        new_status=payload.status,
        underwriter_id=payload.underwriterId,
    )
    return success_envelope(record, trace_id_from_request(request))


@router.post("/{application_id}/analyze")
def analyze_application(application_id: str, request: Request):
    services = services_from_request(request)
    record = services.jobs.require(application_id)
    text = str(record.get("extractedTextCombined") or "")
    if not text.strip():
        raise ApiError(
            code="JOB_TEXT_UNAVAILABLE",
            message="application has no extracted text yet",
            error_class="business_rule",
            retryable=True,
            http_status=409,
        )
    data = {"id": application_id, "docName": record.get("documentName") or "Uploaded PDF", **extract_fields(text)}
    return success_envelope(data, trace_id_from_request(request))
