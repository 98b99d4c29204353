from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from velocity.config import PipelineConfig
from velocity.errors import ApiError, error_to_dict
from velocity.leases import LeaseClaim, LeaseManager
from velocity.models import (
    EXTRACTION_FIELDS,
    STAGE_ANALYZING,
    STAGE_PARSING,
    STAGE_PARSING_FAILED,
    ParsingJob,
    WorkerResult,
    to_iso,
    utcnow,
)
from velocity.object_storage import DocumentStore
from velocity.pdf_text import (
    EXTRACTOR_PRIMARY,
    EXTRACTOR_REPAIRED,
    extract_pdf_text,
    is_xref_error,
    normalize_text,
    repair_pdf_bytes,
    validate_download,
)
from velocity.repositories.jobs import JobsRepository

logger = logging.getLogger(__name__)


def _empty_text_error(message: str) -> ApiError:
    return ApiError(
        code="DOC_PARSE_EMPTY_TEXT",
        message=message,
        error_class="permanent",
        retryable=False,
        http_status=422,
    )


class ParsingWorker:
    """Drains at most one `parsing` job per call: download, extract, advance to `analyzing`."""

    def __init__(
        self,
        *,
        jobs: JobsRepository,
        lease_manager: LeaseManager,
        document_store: DocumentStore,
        config: PipelineConfig,
        extract_fn: Callable[[bytes], str] = extract_pdf_text,
        repair_fn: Callable[[bytes], bytes] = repair_pdf_bytes,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs = jobs
        self._leases = lease_manager
        self._documents = document_store
        self._config = config
        self._extract_fn = extract_fn
        self._repair_fn = repair_fn
        self._now = now_fn

    def process_one(self) -> WorkerResult:
        claim = self._leases.claim_one(STAGE_PARSING)
        if claim is None:
            return WorkerResult(processed=0, status="idle", message="No parsing jobs.")
        try:
            return self._process_claimed(claim)
        except Exception as exc:
            # Lease is left to expire so the job becomes claimable again.
            logger.exception("parsing_worker_crashed job_id=%s", claim.job_id)
            return WorkerResult(processed=0, status="crashed", job_id=claim.job_id, error=str(exc))

    def _process_claimed(self, claim: LeaseClaim) -> WorkerResult:
        job = self._jobs.load(claim.job_id)
        if not isinstance(job, ParsingJob):
            self._leases.release(claim.job_id, "skipped", holder=claim.holder)
            logger.info("parsing_job_skipped job_id=%s", claim.job_id)
            return WorkerResult(
                processed=0,
                status="skipped",
                job_id=claim.job_id,
                message="Job no longer in parsing; skipped.",
            )

        if not job.object_path:
            missing = ApiError(
                code="JOB_INPUT_MISSING",
                message="Missing required field: objectPath",
                error_class="permanent",
                retryable=False,
                http_status=422,
            )
            return self._fail(claim, missing)

        try:
            text, extractor, fallback_used = self._extract(job.object_path)
        except Exception as exc:
            return self._fail(claim, exc)

        now = to_iso(self._now())
        written = self._leases.finish(
            claim,
            fields={
                "extractedTextCombined": text,
                "extractedTextLength": len(text),
                "extractor": extractor,
                "fallbackUsed": fallback_used,
                "processingStage": STAGE_ANALYZING,
                "parsingCompletedAt": now,
                "parsingError": None,
                "parsingFailedAt": None,
            },
            reason="success",
        )
        if not written:
            return WorkerResult(processed=0, status="skipped", job_id=claim.job_id, message="Lease lost; skipped.")
        logger.info(
            "parsing_job_succeeded job_id=%s extractor=%s length=%d fallback=%s",
            claim.job_id,
            extractor,
            len(text),
            fallback_used,
        )
        return WorkerResult(
            processed=1,
            status="succeeded",
            job_id=claim.job_id,
            details={
                "extractor": extractor,
                "extractedTextLength": len(text),
                "fallbackUsed": fallback_used,
            },
        )

    def _download_with_retry(self, object_path: str) -> tuple[bytes, int]:
        last_error: Exception | None = None
        for attempt in range(1, self._config.download_attempts + 1):
            try:
                data = self._documents.download(object_path)
                return validate_download(data, min_bytes=self._config.min_document_bytes), attempt
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "document_download_failed path=%s attempt=%d error=%s", object_path, attempt, exc
                )
        if last_error is None:
            raise RuntimeError("no download attempts configured")
        raise last_error

    def _extract(self, object_path: str) -> tuple[str, str, bool]:
        data, attempt = self._download_with_retry(object_path)
        try:
            try:
                raw_text = self._extract_fn(data)
            except Exception:
                if attempt != 1:
                    raise
                # A truncated first download often surfaces as a parse error.
                data, _ = self._download_with_retry(object_path)
                raw_text = self._extract_fn(data)
            text = normalize_text(raw_text)
            if not text:
                raise _empty_text_error("PDF parsed but extracted text was empty.")
            return text, EXTRACTOR_PRIMARY, False
        except Exception as exc:
            if not is_xref_error(exc):
                raise
            logger.warning("pdf_repair_fallback path=%s error=%s", object_path, exc)

        raw, _ = self._download_with_retry(object_path)
        repaired = self._repair_fn(raw)
        text = normalize_text(self._extract_fn(repaired))
        if not text:
            raise _empty_text_error("Repair succeeded but extracted text was empty.")
        return text, EXTRACTOR_REPAIRED, True

    def _fail(self, claim: LeaseClaim, exc: BaseException) -> WorkerResult:
        error = error_to_dict(exc)
        written = self._leases.finish(
            claim,
            fields={
                "processingStage": STAGE_PARSING_FAILED,
                "parsingError": error,
                "parsingFailedAt": to_iso(self._now()),
                "parsingCompletedAt": None,
                **dict.fromkeys(EXTRACTION_FIELDS),
            },
            reason="failed",
        )
        if not written:
            return WorkerResult(processed=0, status="skipped", job_id=claim.job_id, message="Lease lost; skipped.")
        logger.warning("parsing_job_failed job_id=%s code=%s error=%s", claim.job_id, error["code"], error["message"])
        return WorkerResult(processed=1, status="failed", job_id=claim.job_id, error=error["message"])
