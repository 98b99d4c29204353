"""
Lease-based exclusive claims over job records.

A worker claims a job by writing a short-lived lease onto the record inside
one record-store transaction. The lease is cleared on release; a worker that
dies without releasing leaves a lease that stops counting once expiresAt has
passed, after which any worker may claim the job again.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from velocity.config import PipelineConfig
from velocity.models import APPLICATIONS, ReleaseReason, WorkerLease, to_iso, utcnow
from velocity.record_store import RecordStore, Transaction
from velocity.repositories.jobs import merge_job_in_tx

logger = logging.getLogger(__name__)

LEASE_FIELD = "workerLease"

_STARTED_AT_FIELD = {
    "parsing": "parsingStartedAt",
    "analyzing": "aiStartedAt",
}


@dataclass
class LeaseClaim:
    job_id: str
    holder: str
    stage: str
    claimed_at: datetime
    expires_at: datetime
    record: dict[str, Any]


class LeaseManager:
    def __init__(
        self,
        *,
        record_store: RecordStore,
        config: PipelineConfig,
        now_fn: Callable[[], datetime] = utcnow,
        holder_fn: Callable[[], str] | None = None,
    ) -> None:
        self._store = record_store
        self._config = config
        self._now = now_fn
        self._holder_fn = holder_fn or (lambda: f"lease_{uuid.uuid4().hex}")

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(milliseconds=self._config.lease_duration_ms)

    def claim_one(self, stage: str) -> LeaseClaim | None:
        """Claim the oldest-updated job in `stage` that carries no live lease."""
        now = self._now()
        holder = self._holder_fn()
        lease = WorkerLease(holder=holder, stage=stage, claimed_at=now, expires_at=now + self.lease_duration)

        def _op(tx: Transaction) -> LeaseClaim | None:
            candidates = tx.query(
                APPLICATIONS,
                where_equals={"processingStage": stage},
                order_by="updatedAt",
                limit=self._config.claim_scan_limit,
                lock=True,
            )
            for snap in candidates:
                fresh = tx.get(APPLICATIONS, snap.doc_id)
                if fresh is None or fresh.get("processingStage") != stage:
                    continue
                current = WorkerLease.from_record(fresh.get(LEASE_FIELD))
                if current is not None and current.is_active(now):
                    continue
                fields: dict[str, Any] = {LEASE_FIELD: lease.to_record()}
                started_field = _STARTED_AT_FIELD.get(stage)
                if started_field:
                    fields[started_field] = to_iso(now)
                record = merge_job_in_tx(tx, job_id=snap.doc_id, fields=fields, now=now)
                return LeaseClaim(
                    job_id=snap.doc_id,
                    holder=holder,
                    stage=stage,
                    claimed_at=lease.claimed_at,
                    expires_at=lease.expires_at,
                    record=record,
                )
            return None

        claim = self._store.run_transaction(_op)
        if claim is not None:
            logger.info("lease_claimed job_id=%s stage=%s holder=%s", claim.job_id, stage, holder)
        return claim

    def finish(self, claim: LeaseClaim, *, fields: dict[str, Any], reason: ReleaseReason) -> bool:
        """Write fields and release the lease atomically.

        Returns False without writing when the lease was lost to another holder
        or the job left the claimed stage in the meantime.
        """
        now = self._now()

        def _op(tx: Transaction) -> bool:
            current = tx.get(APPLICATIONS, claim.job_id)
            if current is None or current.get("processingStage") != claim.stage:
                return False
            lease = WorkerLease.from_record(current.get(LEASE_FIELD))
            if lease is None or lease.holder != claim.holder:
                return False
            patch = dict(fields)
            patch.update(
                {
                    LEASE_FIELD: None,
                    "leaseReleasedAt": to_iso(now),
                    "leaseReleaseReason": reason,
                }
            )
            merge_job_in_tx(tx, job_id=claim.job_id, fields=patch, now=now)
            return True

        written = self._store.run_transaction(_op)
        if not written:
            logger.warning("lease_lost job_id=%s holder=%s reason=%s", claim.job_id, claim.holder, reason)
        return written

    def release(self, job_id: str, reason: ReleaseReason, *, holder: str | None = None) -> bool:
        """Best-effort lease cleanup; never raises.

        When `holder` is given, a lease now owned by someone else is left alone.
        """
        now = self._now()

        def _op(tx: Transaction) -> bool:
            current = tx.get(APPLICATIONS, job_id)
            if current is None:
                return False
            lease = WorkerLease.from_record(current.get(LEASE_FIELD))
            if holder is not None and lease is not None and lease.holder != holder:
                return False
            merge_job_in_tx(
                tx,
                job_id=job_id,
                fields={
                    LEASE_FIELD: None,
                    "leaseReleasedAt": to_iso(now),
                    "leaseReleaseReason": reason,
                },
                now=now,
            )
            return True

        try:
            return self._store.run_transaction(_op)
        except Exception as exc:
            logger.warning("lease_release_failed job_id=%s reason=%s error=%s", job_id, reason, exc)
            return False
