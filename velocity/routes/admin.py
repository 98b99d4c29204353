from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Request

from velocity.routes._deps import services_from_request, trace_id_from_request
from velocity.schemas import (
    CompanyProfileUpsertRequest,
    OverlayUpsertRequest,
    ProgramUpsertRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.put("/company-profiles/{company_profile_id}")
def upsert_company_profile(company_profile_id: str, payload: CompanyProfileUpsertRequest, request: Request):
    services = services_from_request(request)
    data = services.references.upsert_company_profile(company_profile_id, payload.model_dump(exclude_none=True))
    return success_envelope(data, trace_id_from_request(request))


@router.put("/rule-packs/{rule_pack_id}")
def upsert_rule_pack(rule_pack_id: str, request: Request, payload: dict[str, Any] = Body(...)):
    services = services_from_request(request)
    data = services.references.upsert_rule_pack(rule_pack_id, payload)
    return success_envelope(data, trace_id_from_request(request))


@router.put("/programs/{program_id}")
def upsert_program(program_id: str, payload: ProgramUpsertRequest, request: Request):
    services = services_from_request(request)
    data = services.references.upsert_program(program_id, payload.model_dump(exclude_none=True))
    return success_envelope(data, trace_id_from_request(request))


@router.put("/overlays/{overlay_id}")
def upsert_overlay(overlay_id: str, payload: OverlayUpsertRequest, request: Request):
    services = services_from_request(request)
    body = payload.model_dump(exclude_none=True, exclude={"activate"})
    data = services.references.upsert_overlay(overlay_id, body, activate=payload.activate)
    return success_envelope(data, trace_id_from_request(request))
