from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from velocity.config import PipelineConfig
from velocity.leases import LeaseClaim, LeaseManager
from velocity.models import (
    STAGE_AI_COMPLETED,
    STAGE_ANALYZING,
    AnalyzingJob,
    Overlay,
    Program,
    WorkerResult,
    to_iso,
    utcnow,
)
from velocity.repositories.jobs import JobsRepository
from velocity.repositories.references import ReferenceDataRepository
from velocity.rule_engine import (
    OverlayInfo,
    build_decision_artifacts,
    build_fail_closed_artifacts,
    evaluate_rules,
    merge_rules,
)

logger = logging.getLogger(__name__)


class RuleEvaluationWorker:
    """Drains at most one `analyzing` job per call and records a decision.

    Missing relationship data never crashes the worker: the job completes as
    `conditional` with the cause in `lastError`.
    """

    def __init__(
        self,
        *,
        jobs: JobsRepository,
        references: ReferenceDataRepository,
        lease_manager: LeaseManager,
        config: PipelineConfig,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs = jobs
        self._refs = references
        self._leases = lease_manager
        self._config = config
        self._now = now_fn

    def process_one(self) -> WorkerResult:
        claim = self._leases.claim_one(STAGE_ANALYZING)
        if claim is None:
            return WorkerResult(processed=0, status="idle", message="No analyzing jobs.")
        try:
            return self._process_claimed(claim)
        except Exception as exc:
            logger.exception("analysis_worker_crashed job_id=%s", claim.job_id)
            return WorkerResult(processed=0, status="crashed", job_id=claim.job_id, error=str(exc))

    def _process_claimed(self, claim: LeaseClaim) -> WorkerResult:
        job = self._jobs.load(claim.job_id)
        if not isinstance(job, AnalyzingJob):
            self._leases.release(claim.job_id, "skipped", holder=claim.holder)
            logger.info("analysis_job_skipped job_id=%s", claim.job_id)
            return WorkerResult(
                processed=0,
                status="skipped",
                job_id=claim.job_id,
                message="Job no longer in analyzing; skipped.",
            )

        company_profile_id = job.company_profile_id
        if not company_profile_id:
            return self._fail_closed(claim, job, "App missing companyProfileId (cannot choose rulepack)")
        text = job.extracted_text.strip()
        if not text:
            return self._fail_closed(claim, job, "Missing extractedTextCombined (cannot evaluate rules)")
        profile = self._refs.get_company_profile(company_profile_id)
        if profile is None:
            return self._fail_closed(claim, job, f"Company profile not found: {company_profile_id}")
        if not profile.rule_pack_id:
            return self._fail_closed(claim, job, f"companyProfiles/{company_profile_id} missing rulePackId")
        rule_pack = self._refs.get_rule_pack(profile.rule_pack_id)
        if rule_pack is None:
            return self._fail_closed(
                claim, job, f"Rule pack not found: {profile.rule_pack_id}", rule_pack_id=profile.rule_pack_id
            )

        program, overlay = self._resolve_overlay(job.program_id)
        rules = merge_rules(rule_pack.rules, overlay.rules if overlay else [])
        result = evaluate_rules(rules, text, evidence_max_chars=self._config.evidence_max_chars)
        overlay_info = OverlayInfo.from_overlay(overlay)

        now = self._now()
        public, raw = build_decision_artifacts(
            app_id=claim.job_id,
            company_profile_id=company_profile_id,
            rule_pack=rule_pack,
            program_id=job.program_id,
            program_name=job.program_name or (program.name if program else None),
            overlay=overlay_info,
            result=result,
            evaluated_at=now,
        )
        written = self._leases.finish(
            claim,
            fields={
                "processingStage": STAGE_AI_COMPLETED,
                "decision": result.decision,
                "decisionArtifactPublic": public,
                "decisionArtifactRaw": raw,
                "aiCompletedAt": to_iso(now),
                "lastError": None,
                "error": None,
            },
            reason="success",
        )
        if not written:
            return WorkerResult(processed=0, status="skipped", job_id=claim.job_id, message="Lease lost; skipped.")
        logger.info(
            "analysis_job_succeeded job_id=%s decision=%s findings=%d conditions=%d blockers=%d overlay=%s",
            claim.job_id,
            result.decision,
            len(result.findings),
            len(result.conditions),
            len(result.blockers),
            overlay_info.overlay_id,
        )
        return WorkerResult(
            processed=1,
            status="succeeded",
            job_id=claim.job_id,
            details={
                "decision": result.decision,
                "matched": len(result.findings),
                "conditionsMatched": len(result.conditions),
                "rulePackId": rule_pack.rule_pack_id,
                "companyProfileId": company_profile_id,
                "programId": job.program_id,
                "overlayApplied": overlay_info.applied,
                "overlayRuleCount": overlay_info.rule_count,
            },
        )

    def _resolve_overlay(self, program_id: str | None) -> tuple[Program | None, Overlay | None]:
        if not program_id:
            return None, None
        program = self._refs.get_program(program_id)
        if program is None or not program.active_overlay_id:
            return program, None
        overlay = self._refs.get_overlay(program.active_overlay_id)
        if overlay is None:
            logger.info(
                "overlay_missing program_id=%s overlay_id=%s", program_id, program.active_overlay_id
            )
        return program, overlay

    def _fail_closed(
        self,
        claim: LeaseClaim,
        job: AnalyzingJob,
        message: str,
        *,
        rule_pack_id: str | None = None,
    ) -> WorkerResult:
        now = self._now()
        public, raw = build_fail_closed_artifacts(
            app_id=claim.job_id,
            company_profile_id=job.company_profile_id,
            rule_pack_id=rule_pack_id,
            program_id=job.program_id,
            error=message,
            evaluated_at=now,
        )
        fields: dict[str, Any] = {
            "processingStage": STAGE_AI_COMPLETED,
            "decision": "conditional",
            "decisionArtifactPublic": public,
            "decisionArtifactRaw": raw,
            "lastError": message,
            "error": message,
            "aiCompletedAt": to_iso(now),
        }
        written = self._leases.finish(claim, fields=fields, reason="failed")
        if not written:
            return WorkerResult(processed=0, status="skipped", job_id=claim.job_id, message="Lease lost; skipped.")
        logger.warning("analysis_job_incomplete job_id=%s error=%s", claim.job_id, message)
        return WorkerResult(
            processed=1,
            status="failed",
            job_id=claim.job_id,
            error=message,
            details={"decision": "conditional", "matched": 0, "conditionsMatched": 0},
        )
