from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from velocity.errors import ApiError
from velocity.models import (
    APPLICATIONS,
    PROCESSING_STAGES,
    STAGE_PARSING,
    Job,
    bump_updated_at,
    job_from_record,
    to_iso,
    utcnow,
)
from velocity.record_store import RecordStore, Transaction


def _job_not_found(job_id: str) -> ApiError:
    return ApiError(
        code="JOB_NOT_FOUND",
        message=f"application not found: {job_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def merge_job_in_tx(
    tx: Transaction,
    *,
    job_id: str,
    fields: dict[str, Any],
    now: datetime,
) -> dict[str, Any]:
    current = tx.get(APPLICATIONS, job_id)
    if current is None:
        raise _job_not_found(job_id)
    patch = dict(fields)
    patch["updatedAt"] = bump_updated_at(current.get("updatedAt"), now)
    tx.set(APPLICATIONS, job_id, patch, merge=True)
    current.update(patch)
    return current


class JobsRepository:
    """Application (job) records; every write bumps updatedAt strictly forward."""

    def __init__(self, *, record_store: RecordStore, now_fn: Callable[[], datetime] = utcnow) -> None:
        self._store = record_store
        self._now = now_fn

    def create(self, *, fields: dict[str, Any], job_id: str | None = None) -> dict[str, Any]:
        job_id = job_id or f"app_{uuid.uuid4().hex[:12]}"
        now = to_iso(self._now())
        record = {
            "processingStage": STAGE_PARSING,
            "status": "New",
            "underwriterId": "",
            "workerLease": None,
            **fields,
            "createdAt": now,
            "updatedAt": now,
        }
        if record["processingStage"] not in PROCESSING_STAGES:
            raise ApiError(
                code="JOB_STAGE_INVALID",
                message=f"invalid processing stage: {record['processingStage']}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        self._store.set(APPLICATIONS, job_id, record, merge=False)
        return {"id": job_id, **record}

    def get(self, job_id: str) -> dict[str, Any] | None:
        record = self._store.get(APPLICATIONS, job_id)
        if record is None:
            return None
        return {"id": job_id, **record}

    def require(self, job_id: str) -> dict[str, Any]:
        record = self.get(job_id)
        if record is None:
            raise _job_not_found(job_id)
        return record

    def load(self, job_id: str) -> Job | None:
        record = self._store.get(APPLICATIONS, job_id)
        if record is None:
            return None
        return job_from_record(job_id, record)

    def merge(self, job_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        merged = self._store.run_transaction(
            lambda tx: merge_job_in_tx(tx, job_id=job_id, fields=fields, now=now)
        )
        return {"id": job_id, **merged}

    def update_if(
        self,
        job_id: str,
        *,
        check: Callable[[dict[str, Any]], None],
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge fields after `check` accepted the current record inside the same transaction."""
        now = self._now()

        def _op(tx: Transaction) -> dict[str, Any]:
            current = tx.get(APPLICATIONS, job_id)
            if current is None:
                raise _job_not_found(job_id)
            check(current)
            return merge_job_in_tx(tx, job_id=job_id, fields=fields, now=now)

        merged = self._store.run_transaction(_op)
        return {"id": job_id, **merged}

    def list(self, *, stage: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        where = {"processingStage": stage} if stage else None
        rows = self._store.query(APPLICATIONS, where_equals=where, order_by="updatedAt", limit=None)
        rows.reverse()
        return [{"id": snap.doc_id, **snap.data} for snap in rows[: max(1, limit)]]
