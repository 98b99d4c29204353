"""
Typed views over job and rule records.

Records are stored as plain camelCase dicts; these dataclasses give each
processing stage its own legal field set so workers never poke at ad hoc
keys of a loosely-typed document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal, Union

STAGE_PARSING = "parsing"
STAGE_PARSING_FAILED = "parsing_failed"
STAGE_ANALYZING = "analyzing"
STAGE_AI_COMPLETED = "ai_completed"
PROCESSING_STAGES = (STAGE_PARSING, STAGE_PARSING_FAILED, STAGE_ANALYZING, STAGE_AI_COMPLETED)

ProcessingStage = Literal["parsing", "parsing_failed", "analyzing", "ai_completed"]
Decision = Literal["pass", "conditional", "fail"]
ReleaseReason = Literal["success", "failed", "skipped"]

RULE_TYPES = ("finding", "condition", "blocker")
RULE_SEVERITIES = ("info", "warn", "error")

APPLICATIONS = "applications"
COMPANY_PROFILES = "companyProfiles"
RULE_PACKS = "rulePacks"
PROGRAMS = "programs"
OVERLAYS = "overlays"

# Output fields owned by one parse attempt or one evaluation run.
EXTRACTION_FIELDS = ("extractedTextCombined", "extractedTextLength", "extractor", "fallbackUsed")
DECISION_FIELDS = (
    "decision",
    "decisionArtifactPublic",
    "decisionArtifactRaw",
    "lastError",
    "error",
    "aiCompletedAt",
)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    # Fixed width so stored timestamps sort lexicographically.
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class WorkerLease:
    holder: str
    stage: str
    claimed_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, raw: Any) -> "WorkerLease | None":
        if not isinstance(raw, dict):
            return None
        expires_at = parse_ts(raw.get("expiresAt"))
        claimed_at = parse_ts(raw.get("claimedAt"))
        if expires_at is None:
            return None
        return cls(
            holder=str(raw.get("holder") or ""),
            stage=str(raw.get("stage") or ""),
            claimed_at=claimed_at or expires_at,
            expires_at=expires_at,
        )

    def to_record(self) -> dict[str, str]:
        return {
            "holder": self.holder,
            "stage": self.stage,
            "claimedAt": to_iso(self.claimed_at),
            "expiresAt": to_iso(self.expires_at),
        }

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class _JobBase:
    job_id: str
    company_profile_id: str | None = None
    program_id: str | None = None
    program_name: str | None = None
    object_path: str | None = None
    updated_at: datetime | None = None
    lease: WorkerLease | None = None


@dataclass
class ParsingJob(_JobBase):
    stage: ProcessingStage = STAGE_PARSING


@dataclass
class ParsingFailedJob(_JobBase):
    parsing_error: dict[str, Any] = field(default_factory=dict)
    parsing_failed_at: datetime | None = None
    stage: ProcessingStage = STAGE_PARSING_FAILED


@dataclass
class AnalyzingJob(_JobBase):
    extracted_text: str = ""
    extracted_text_length: int = 0
    extractor: str | None = None
    fallback_used: bool = False
    stage: ProcessingStage = STAGE_ANALYZING


@dataclass
class CompletedJob(_JobBase):
    decision: Decision = "conditional"
    decision_artifact_public: dict[str, Any] | None = None
    decision_artifact_raw: dict[str, Any] | None = None
    last_error: str | None = None
    extracted_text: str = ""
    stage: ProcessingStage = STAGE_AI_COMPLETED


Job = Union[ParsingJob, ParsingFailedJob, AnalyzingJob, CompletedJob]


def job_from_record(job_id: str, record: dict[str, Any]) -> Job:
    stage = str(record.get("processingStage") or "")
    common: dict[str, Any] = {
        "job_id": job_id,
        "company_profile_id": _str_or_none(record.get("companyProfileId")),
        "program_id": _str_or_none(record.get("programId")),
        "program_name": _str_or_none(record.get("programName")),
        "object_path": _str_or_none(record.get("objectPath")),
        "updated_at": parse_ts(record.get("updatedAt")),
        "lease": WorkerLease.from_record(record.get("workerLease")),
    }
    text = str(record.get("extractedTextCombined") or record.get("extractedText") or "")
    if stage == STAGE_PARSING:
        return ParsingJob(**common)
    if stage == STAGE_PARSING_FAILED:
        error = record.get("parsingError")
        return ParsingFailedJob(
            **common,
            parsing_error=error if isinstance(error, dict) else {"message": str(error or "")},
            parsing_failed_at=parse_ts(record.get("parsingFailedAt")),
        )
    if stage == STAGE_ANALYZING:
        return AnalyzingJob(
            **common,
            extracted_text=text,
            extracted_text_length=int(record.get("extractedTextLength") or len(text)),
            extractor=_str_or_none(record.get("extractor")),
            fallback_used=bool(record.get("fallbackUsed", False)),
        )
    if stage == STAGE_AI_COMPLETED:
        decision = str(record.get("decision") or "conditional")
        if decision not in ("pass", "conditional", "fail"):
            decision = "conditional"
        return CompletedJob(
            **common,
            decision=decision,  # type: ignore[arg-type]
            decision_artifact_public=record.get("decisionArtifactPublic"),
            decision_artifact_raw=record.get("decisionArtifactRaw"),
            last_error=_str_or_none(record.get("lastError")),
            extracted_text=text,
        )
    raise ValueError(f"unknown processing stage: {stage!r}")


@dataclass(frozen=True)
class Rule:
    rule_id: str
    title: str
    pattern: str = ""
    type: str = "finding"
    severity: str | None = None
    source: str = "base"

    @classmethod
    def from_record(cls, raw: dict[str, Any], *, source: str) -> "Rule":
        rule_type = str(raw.get("type") or "finding").strip().lower()
        if rule_type not in RULE_TYPES:
            rule_type = "finding"
        severity = _str_or_none(raw.get("severity"))
        if severity is not None and severity not in RULE_SEVERITIES:
            severity = None
        return cls(
            rule_id=str(raw.get("ruleId") or ""),
            title=str(raw.get("title") or ""),
            pattern=str(raw.get("pattern") or ""),
            type=rule_type,
            severity=severity,
            source=source,
        )

    def effective_severity(self) -> str:
        if self.severity:
            return self.severity
        return "error" if self.type == "blocker" else "warn"


@dataclass(frozen=True)
class CompanyProfile:
    company_profile_id: str
    name: str | None
    rule_pack_id: str | None

    @classmethod
    def from_record(cls, doc_id: str, raw: dict[str, Any]) -> "CompanyProfile":
        return cls(
            company_profile_id=doc_id,
            name=_str_or_none(raw.get("name")),
            rule_pack_id=_str_or_none(raw.get("rulePackId")),
        )


@dataclass(frozen=True)
class RulePack:
    rule_pack_id: str
    rule_pack_version: str
    rules: list[Rule]

    @classmethod
    def from_record(cls, doc_id: str, raw: dict[str, Any]) -> "RulePack":
        items = raw.get("rules")
        rules = [Rule.from_record(r, source="base") for r in items if isinstance(r, dict)] if isinstance(items, list) else []
        return cls(
            rule_pack_id=doc_id,
            rule_pack_version=str(raw.get("rulePackVersion") or "1"),
            rules=rules,
        )


@dataclass(frozen=True)
class Program:
    program_id: str
    name: str | None
    active_overlay_id: str | None

    @classmethod
    def from_record(cls, doc_id: str, raw: dict[str, Any]) -> "Program":
        return cls(
            program_id=doc_id,
            name=_str_or_none(raw.get("name")),
            active_overlay_id=_str_or_none(raw.get("activeOverlayId")),
        )


@dataclass(frozen=True)
class Overlay:
    overlay_id: str
    name: str
    rules: list[Rule]

    @classmethod
    def from_record(cls, doc_id: str, raw: dict[str, Any]) -> "Overlay":
        items = raw.get("rules")
        rules = (
            [Rule.from_record(r, source="overlay") for r in items if isinstance(r, dict)]
            if isinstance(items, list)
            else []
        )
        return cls(overlay_id=doc_id, name=_str_or_none(raw.get("name")) or doc_id, rules=rules)


@dataclass
class WorkerResult:
    """Outcome of one worker invocation.

    status is one of idle, skipped, succeeded, failed (handled, recorded on
    the job) or crashed (unexpected exception, lease left to expire).
    """

    processed: int
    status: str
    job_id: str | None = None
    error: str | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def crashed(self) -> bool:
        return self.status == "crashed"

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"processed": self.processed, "status": self.status}
        if self.job_id is not None:
            out["jobId"] = self.job_id
        if self.error is not None:
            out["error"] = self.error
        if self.message is not None:
            out["msg"] = self.message
        out.update(self.details)
        return out


def bump_updated_at(previous: Any, now: datetime) -> str:
    """Next updatedAt value: now, but strictly after the previous stamp."""
    prev = parse_ts(previous)
    if prev is not None and now <= prev:
        now = prev + timedelta(microseconds=1)
    return to_iso(now)
