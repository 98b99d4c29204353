from __future__ import annotations

from conftest import make_pdf

from velocity.config import PipelineConfig
from velocity.errors import ApiError
from velocity.leases import LeaseManager
from velocity.parsing_worker import ParsingWorker
from velocity.pdf_text import EXTRACTOR_PRIMARY, EXTRACTOR_REPAIRED


class FlakyDocumentStore:
    """Serves queued payloads in order, then repeats the last one."""

    def __init__(self, *payloads: bytes) -> None:
        self._payloads = list(payloads)
        self.calls = 0

    def download(self, path: str) -> bytes:
        self.calls += 1
        if len(self._payloads) > 1:
            return self._payloads.pop(0)
        return self._payloads[0]

    def upload(self, path, content_bytes, *, content_type=None):
        raise NotImplementedError


def _worker(jobs, lease_manager, document_store, clock, config=None, **kwargs) -> ParsingWorker:
    return ParsingWorker(
        jobs=jobs,
        lease_manager=lease_manager,
        document_store=document_store,
        config=config or PipelineConfig(),
        now_fn=clock,
        **kwargs,
    )


def test_idle_when_no_parsing_jobs(jobs, lease_manager, document_store, clock):
    result = _worker(jobs, lease_manager, document_store, clock).process_one()

    assert result.processed == 0
    assert result.status == "idle"
    assert result.as_dict()["msg"] == "No parsing jobs."


def test_happy_path_extracts_text_and_advances(jobs, lease_manager, document_store, clock):
    path = document_store.upload("applications/a1/1__doc.pdf", make_pdf("Borrower: Jane Doe"))
    created = jobs.create(fields={"objectPath": path})

    result = _worker(jobs, lease_manager, document_store, clock).process_one()

    assert result.status == "succeeded"
    assert result.processed == 1
    record = jobs.get(created["id"])
    assert record["processingStage"] == "analyzing"
    assert "Borrower: Jane Doe" in record["extractedTextCombined"]
    assert record["extractedTextLength"] == len(record["extractedTextCombined"])
    assert record["extractor"] == EXTRACTOR_PRIMARY
    assert record["fallbackUsed"] is False
    assert record["workerLease"] is None
    assert record["leaseReleaseReason"] == "success"
    assert record["parsingCompletedAt"]


def test_html_download_is_retried_once(jobs, lease_manager, clock):
    html = b"<html><body>Temporarily unavailable, please retry later.</body></html>"
    store = FlakyDocumentStore(html, make_pdf("Borrower: Jane Doe"))
    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})

    result = _worker(jobs, lease_manager, store, clock).process_one()

    assert result.status == "succeeded"
    assert store.calls == 2
    assert jobs.get(created["id"])["processingStage"] == "analyzing"


def test_download_failures_after_retry_fail_the_job(jobs, lease_manager, clock):
    store = FlakyDocumentStore(b"tiny")
    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})

    result = _worker(jobs, lease_manager, store, clock).process_one()

    assert result.status == "failed"
    assert result.processed == 1
    assert store.calls == 2
    record = jobs.get(created["id"])
    assert record["processingStage"] == "parsing_failed"
    assert record["parsingError"]["code"] == "DOC_DOWNLOAD_TOO_SMALL"
    assert record["parsingFailedAt"]
    assert record["workerLease"] is None
    assert record["leaseReleaseReason"] == "failed"


def test_success_after_earlier_failure_clears_failure_fields(jobs, lease_manager, document_store, clock):
    created = jobs.create(fields={"objectPath": "applications/a1/missing.pdf"})
    worker = _worker(jobs, lease_manager, document_store, clock)
    assert worker.process_one().status == "failed"

    path = document_store.upload("applications/a1/2__doc.pdf", make_pdf("Borrower: Jane Doe"))
    jobs.merge(created["id"], {"objectPath": path, "processingStage": "parsing"})
    clock.advance(seconds=5)

    assert worker.process_one().status == "succeeded"
    record = jobs.get(created["id"])
    assert record["processingStage"] == "analyzing"
    assert record["parsingError"] is None
    assert record["parsingFailedAt"] is None
    assert record["parsingCompletedAt"]


def test_failure_after_earlier_success_clears_extraction_fields(jobs, lease_manager, document_store, clock):
    path = document_store.upload("applications/a1/1__doc.pdf", make_pdf("Borrower: Jane Doe"))
    created = jobs.create(fields={"objectPath": path})
    worker = _worker(jobs, lease_manager, document_store, clock)
    assert worker.process_one().status == "succeeded"

    jobs.merge(created["id"], {"objectPath": "applications/a1/missing.pdf", "processingStage": "parsing"})

    assert worker.process_one().status == "failed"
    record = jobs.get(created["id"])
    assert record["processingStage"] == "parsing_failed"
    assert record["parsingError"]["code"] == "DOC_NOT_FOUND"
    assert record["parsingCompletedAt"] is None
    for name in ("extractedTextCombined", "extractedTextLength", "extractor", "fallbackUsed"):
        assert record[name] is None


def test_missing_document_fails_with_not_found(jobs, lease_manager, document_store, clock):
    created = jobs.create(fields={"objectPath": "applications/a1/missing.pdf"})

    result = _worker(jobs, lease_manager, document_store, clock).process_one()

    assert result.status == "failed"
    assert jobs.get(created["id"])["parsingError"]["code"] == "DOC_NOT_FOUND"


def test_missing_object_path_fails_permanently(jobs, lease_manager, document_store, clock):
    created = jobs.create(fields={})

    result = _worker(jobs, lease_manager, document_store, clock).process_one()

    assert result.status == "failed"
    record = jobs.get(created["id"])
    assert record["processingStage"] == "parsing_failed"
    assert record["parsingError"] == {
        "name": "ApiError",
        "code": "JOB_INPUT_MISSING",
        "message": "Missing required field: objectPath",
    }


def test_xref_error_triggers_repair_fallback(jobs, lease_manager, clock):
    original = b"%PDF-1.4 broken-bytes " + b"x" * 80
    repaired = b"%PDF-1.4 repaired-bytes " + b"y" * 80
    store = FlakyDocumentStore(original)
    seen: list[bytes] = []

    def extract(data: bytes) -> str:
        seen.append(data)
        if data == repaired:
            return "  Borrower: Jane Doe\r\n"
        raise RuntimeError("cannot find xref table")

    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})
    worker = _worker(
        jobs,
        lease_manager,
        store,
        clock,
        extract_fn=extract,
        repair_fn=lambda data: repaired,
    )

    result = worker.process_one()

    assert result.status == "succeeded"
    assert result.details["fallbackUsed"] is True
    record = jobs.get(created["id"])
    assert record["processingStage"] == "analyzing"
    assert record["extractor"] == EXTRACTOR_REPAIRED
    assert record["fallbackUsed"] is True
    assert record["extractedTextCombined"] == "Borrower: Jane Doe"
    assert seen[-1] == repaired


def test_failed_repair_marks_job_failed(jobs, lease_manager, clock):
    def extract(data: bytes) -> str:
        raise RuntimeError("trailer not found")

    def repair(data: bytes) -> bytes:
        raise ApiError(
            code="DOC_PDF_REPAIR_FAILED",
            message="PDF repair failed: unable to find trailer",
            error_class="permanent",
            retryable=False,
            http_status=422,
        )

    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})
    store = FlakyDocumentStore(b"%PDF-1.4 " + b"z" * 80)

    result = _worker(jobs, lease_manager, store, clock, extract_fn=extract, repair_fn=repair).process_one()

    assert result.status == "failed"
    record = jobs.get(created["id"])
    assert record["processingStage"] == "parsing_failed"
    assert record["parsingError"]["code"] == "DOC_PDF_REPAIR_FAILED"


def test_empty_text_fails_without_repair(jobs, lease_manager, clock):
    repairs: list[bytes] = []

    def repair(data: bytes) -> bytes:
        repairs.append(data)
        return data

    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})
    store = FlakyDocumentStore(b"%PDF-1.4 " + b"z" * 80)

    result = _worker(
        jobs, lease_manager, store, clock, extract_fn=lambda data: "  \n ", repair_fn=repair
    ).process_one()

    assert result.status == "failed"
    assert repairs == []
    assert jobs.get(created["id"])["parsingError"]["code"] == "DOC_PARSE_EMPTY_TEXT"


def test_first_parse_error_redownloads_once(jobs, lease_manager, clock):
    calls = {"n": 0}

    def extract(data: bytes) -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("unexpected end of stream")
        return "Borrower: Jane Doe"

    store = FlakyDocumentStore(b"%PDF-1.4 " + b"z" * 80)
    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})

    result = _worker(jobs, lease_manager, store, clock, extract_fn=extract).process_one()

    assert result.status == "succeeded"
    assert store.calls == 2
    assert jobs.get(created["id"])["extractor"] == EXTRACTOR_PRIMARY


def test_stage_drift_releases_as_skipped(jobs, record_store, clock, document_store):
    created = jobs.create(fields={"objectPath": "p"})

    class DriftingLeases(LeaseManager):
        def claim_one(self, stage):
            claim = super().claim_one(stage)
            jobs.merge(claim.job_id, {"processingStage": "ai_completed"})
            return claim

    leases = DriftingLeases(record_store=record_store, config=PipelineConfig(), now_fn=clock)

    result = _worker(jobs, leases, document_store, clock).process_one()

    assert result.status == "skipped"
    assert result.processed == 0
    record = jobs.get(created["id"])
    assert record["processingStage"] == "ai_completed"
    assert record["workerLease"] is None
    assert record["leaseReleaseReason"] == "skipped"


def test_unexpected_crash_leaves_lease_to_expire(jobs, lease_manager, clock):
    class ExplodingStore:
        def download(self, path):
            return b"%PDF-1.4 " + b"z" * 80

    def extract(data: bytes) -> str:
        return "Borrower: Jane Doe"

    created = jobs.create(fields={"objectPath": "applications/a1/doc.pdf"})
    worker = _worker(jobs, lease_manager, ExplodingStore(), clock, extract_fn=extract)

    original_finish = lease_manager.finish

    def broken_finish(*args, **kwargs):
        raise ConnectionError("record store unavailable")

    lease_manager.finish = broken_finish
    result = worker.process_one()
    lease_manager.finish = original_finish

    assert result.status == "crashed"
    assert result.crashed
    assert "record store unavailable" in result.error
    record = jobs.get(created["id"])
    assert record["processingStage"] == "parsing"
    assert record["workerLease"] is not None

    clock.advance(minutes=6)
    retry = worker.process_one()
    assert retry.status == "succeeded"
    assert jobs.get(created["id"])["processingStage"] == "analyzing"
