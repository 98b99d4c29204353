from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CreateApplicationRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    companyProfileId: str | None = None
    programId: str | None = None
    programName: str | None = None
    objectPath: str | None = None
    borrowerName: str | None = None
    borrowerEmail: str | None = None
    loanAmount: float | None = Field(default=None, ge=0)


class RequeueRequest(BaseModel):
    reason: str = ""


class StatusChangeRequest(BaseModel):
    status: Literal["New", "In Review", "Approved", "Denied", "Closed"]
    underwriterId: str | None = None


class CompanyProfileUpsertRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    rulePackId: str = Field(min_length=1)


class ProgramUpsertRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    activeOverlayId: str | None = None


class OverlayUpsertRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    programId: str | None = None
    activate: bool = False
    rules: list[dict[str, Any]] = Field(default_factory=list)


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
