from __future__ import annotations

from typing import Any

from jsonschema import ValidationError, validate

from velocity.errors import ApiError
from velocity.models import (
    COMPANY_PROFILES,
    OVERLAYS,
    PROGRAMS,
    RULE_PACKS,
    RULE_SEVERITIES,
    RULE_TYPES,
    CompanyProfile,
    Overlay,
    Program,
    RulePack,
    to_iso,
    utcnow,
)
from velocity.record_store import RecordStore

RULE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["ruleId", "title"],
    "properties": {
        "ruleId": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "severity": {"enum": list(RULE_SEVERITIES)},
        "pattern": {"type": "string"},
        "type": {"enum": list(RULE_TYPES)},
    },
}

RULE_PACK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["rules"],
    "properties": {
        "name": {"type": "string"},
        "rulePackVersion": {"type": ["string", "integer"]},
        "rules": {"type": "array", "items": RULE_SCHEMA},
    },
}

OVERLAY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["rules"],
    "properties": {
        "name": {"type": "string"},
        "programId": {"type": ["string", "null"]},
        "rules": {"type": "array", "items": RULE_SCHEMA},
    },
}


def _validate(payload: dict[str, Any], schema: dict[str, Any], *, what: str) -> None:
    try:
        validate(instance=payload, schema=schema)
    except ValidationError as exc:
        path = "/".join(str(p) for p in exc.absolute_path)
        raise ApiError(
            code="RULES_PAYLOAD_INVALID",
            message=f"invalid {what}{f' at {path}' if path else ''}: {exc.message}",
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from exc


class ReferenceDataRepository:
    """Company profiles, rule packs, programs and overlays read by the analysis worker."""

    def __init__(self, *, record_store: RecordStore) -> None:
        self._store = record_store

    def get_company_profile(self, company_profile_id: str) -> CompanyProfile | None:
        raw = self._store.get(COMPANY_PROFILES, company_profile_id)
        return CompanyProfile.from_record(company_profile_id, raw) if raw is not None else None

    def get_rule_pack(self, rule_pack_id: str) -> RulePack | None:
        raw = self._store.get(RULE_PACKS, rule_pack_id)
        return RulePack.from_record(rule_pack_id, raw) if raw is not None else None

    def get_program(self, program_id: str) -> Program | None:
        raw = self._store.get(PROGRAMS, program_id)
        return Program.from_record(program_id, raw) if raw is not None else None

    def get_overlay(self, overlay_id: str) -> Overlay | None:
        raw = self._store.get(OVERLAYS, overlay_id)
        return Overlay.from_record(overlay_id, raw) if raw is not None else None

    def upsert_company_profile(self, company_profile_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        item = {**payload, "updatedAt": to_iso(utcnow())}
        self._store.set(COMPANY_PROFILES, company_profile_id, item, merge=True)
        return {"id": company_profile_id, **item}

    def upsert_rule_pack(self, rule_pack_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        _validate(payload, RULE_PACK_SCHEMA, what="rule pack")
        item = {
            **payload,
            "rulePackVersion": str(payload.get("rulePackVersion") or "1"),
            "ruleCount": len(payload["rules"]),
            "updatedAt": to_iso(utcnow()),
        }
        self._store.set(RULE_PACKS, rule_pack_id, item, merge=False)
        return {"id": rule_pack_id, **item}

    def upsert_program(self, program_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        item = {**payload, "updatedAt": to_iso(utcnow())}
        self._store.set(PROGRAMS, program_id, item, merge=True)
        return {"id": program_id, **item}

    def upsert_overlay(self, overlay_id: str, payload: dict[str, Any], *, activate: bool = False) -> dict[str, Any]:
        _validate(payload, OVERLAY_SCHEMA, what="overlay")
        item = {
            **payload,
            "rules": [{**rule, "source": "overlay"} for rule in payload["rules"]],
            "ruleCount": len(payload["rules"]),
            "updatedAt": to_iso(utcnow()),
        }
        program_id = str(payload.get("programId") or "").strip()
        if activate and not program_id:
            raise ApiError(
                code="RULES_PAYLOAD_INVALID",
                message="programId is required to activate an overlay",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if activate and self._store.get(PROGRAMS, program_id) is None:
            raise ApiError(
                code="PROGRAM_NOT_FOUND",
                message=f"program not found: {program_id}",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        self._store.set(OVERLAYS, overlay_id, item, merge=False)
        if activate:
            self._store.set(
                PROGRAMS,
                program_id,
                {"activeOverlayId": overlay_id, "updatedAt": to_iso(utcnow())},
                merge=True,
            )
        return {"id": overlay_id, **item}
