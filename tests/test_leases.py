from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from velocity.config import PipelineConfig
from velocity.leases import LeaseManager
from velocity.models import APPLICATIONS, parse_ts
from velocity.record_store import SqliteRecordStore


def test_claim_one_returns_none_when_stage_is_empty(lease_manager):
    assert lease_manager.claim_one("parsing") is None


def test_claim_one_writes_lease_and_started_at(jobs, lease_manager, clock):
    created = jobs.create(fields={"objectPath": "applications/a/1__doc.pdf"})

    claim = lease_manager.claim_one("parsing")

    assert claim is not None
    assert claim.job_id == created["id"]
    record = jobs.get(created["id"])
    assert record["workerLease"]["holder"] == claim.holder
    assert record["workerLease"]["stage"] == "parsing"
    assert parse_ts(record["workerLease"]["expiresAt"]) == clock.now + lease_manager.lease_duration
    assert record["parsingStartedAt"]
    assert record["updatedAt"] > created["updatedAt"]


def test_claim_skips_job_with_active_lease(jobs, lease_manager, clock):
    jobs.create(fields={"objectPath": "p"})

    first = lease_manager.claim_one("parsing")
    clock.advance(seconds=30)
    second = lease_manager.claim_one("parsing")

    assert first is not None
    assert second is None


def test_expired_lease_becomes_claimable(jobs, lease_manager, clock):
    jobs.create(fields={"objectPath": "p"})

    first = lease_manager.claim_one("parsing")
    clock.advance(seconds=61)
    second = lease_manager.claim_one("parsing")

    assert first is not None and second is not None
    assert second.job_id == first.job_id
    assert second.holder != first.holder


def test_lease_expiring_exactly_now_is_not_active(jobs, lease_manager, clock):
    jobs.create(fields={"objectPath": "p"})

    lease_manager.claim_one("parsing")
    clock.advance(seconds=60)

    assert lease_manager.claim_one("parsing") is not None


def test_claim_picks_oldest_updated_first(jobs, lease_manager, clock):
    older = jobs.create(fields={"objectPath": "p1"})
    clock.advance(seconds=1)
    jobs.create(fields={"objectPath": "p2"})

    claim = lease_manager.claim_one("parsing")

    assert claim is not None and claim.job_id == older["id"]


def test_claim_scans_past_leased_jobs(jobs, lease_manager, clock):
    jobs.create(fields={"objectPath": "p1"})
    clock.advance(seconds=1)
    second = jobs.create(fields={"objectPath": "p2"})

    lease_manager.claim_one("parsing")
    claim = lease_manager.claim_one("parsing")

    assert claim is not None and claim.job_id == second["id"]


def test_finish_writes_fields_and_clears_lease(jobs, lease_manager):
    created = jobs.create(fields={"objectPath": "p"})
    claim = lease_manager.claim_one("parsing")

    assert lease_manager.finish(claim, fields={"processingStage": "analyzing"}, reason="success") is True

    record = jobs.get(created["id"])
    assert record["workerLease"] is None
    assert record["processingStage"] == "analyzing"
    assert record["leaseReleaseReason"] == "success"
    assert record["leaseReleasedAt"]


def test_finish_refuses_when_lease_taken_over(jobs, lease_manager, clock):
    created = jobs.create(fields={"objectPath": "p"})
    stale = lease_manager.claim_one("parsing")
    clock.advance(seconds=61)
    fresh = lease_manager.claim_one("parsing")

    assert lease_manager.finish(stale, fields={"processingStage": "analyzing"}, reason="success") is False
    record = jobs.get(created["id"])
    assert record["processingStage"] == "parsing"
    assert record["workerLease"]["holder"] == fresh.holder


def test_finish_refuses_when_stage_moved(jobs, lease_manager):
    created = jobs.create(fields={"objectPath": "p"})
    claim = lease_manager.claim_one("parsing")
    jobs.merge(created["id"], {"processingStage": "ai_completed"})

    assert lease_manager.finish(claim, fields={"processingStage": "analyzing"}, reason="success") is False
    assert jobs.get(created["id"])["processingStage"] == "ai_completed"


def test_release_clears_lease_with_reason(jobs, lease_manager):
    created = jobs.create(fields={"objectPath": "p"})
    claim = lease_manager.claim_one("parsing")

    assert lease_manager.release(claim.job_id, "skipped", holder=claim.holder) is True

    record = jobs.get(created["id"])
    assert record["workerLease"] is None
    assert record["leaseReleaseReason"] == "skipped"


def test_release_leaves_foreign_lease_alone(jobs, lease_manager):
    created = jobs.create(fields={"objectPath": "p"})
    claim = lease_manager.claim_one("parsing")

    assert lease_manager.release(created["id"], "skipped", holder="someone-else") is False
    assert jobs.get(created["id"])["workerLease"]["holder"] == claim.holder


def test_release_swallows_store_errors(record_store, config):
    class BrokenStore:
        def run_transaction(self, fn):
            raise ConnectionError("store down")

    manager = LeaseManager(record_store=BrokenStore(), config=config)

    assert manager.release("app_x", "failed") is False


def test_release_of_missing_job_returns_false(lease_manager):
    assert lease_manager.release("missing", "failed") is False


def _race(manager_factory, workers: int = 8) -> list:
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(lambda: manager_factory().claim_one("parsing")) for _ in range(workers)]
        return [f.result() for f in futures]


def test_concurrent_claims_in_memory_yield_single_winner(jobs, record_store, config):
    created = jobs.create(fields={"objectPath": "p"})

    results = _race(lambda: LeaseManager(record_store=record_store, config=config))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].job_id == created["id"]


def test_concurrent_claims_sqlite_yield_single_winner(tmp_path):
    from velocity.repositories import JobsRepository

    store = SqliteRecordStore(tmp_path / "records.sqlite3")
    created = JobsRepository(record_store=store).create(fields={"objectPath": "p"})
    config = PipelineConfig()

    results = _race(lambda: LeaseManager(record_store=store, config=config))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert store.get(APPLICATIONS, created["id"])["workerLease"]["holder"] == winners[0].holder


def test_each_job_claimed_once_under_concurrency(jobs, record_store, config):
    ids = {jobs.create(fields={"objectPath": f"p{i}"})["id"] for i in range(5)}

    results = _race(lambda: LeaseManager(record_store=record_store, config=config), workers=10)

    claimed = [r.job_id for r in results if r is not None]
    assert sorted(claimed) == sorted(ids)


def test_only_claims_request_row_locks(jobs, record_store, config, clock):
    seen: list[bool] = []

    class RecordingStore:
        def run_transaction(self, fn):
            def _wrapped(tx):
                class _Tx:
                    def get(self, *args, **kwargs):
                        return tx.get(*args, **kwargs)

                    def set(self, *args, **kwargs):
                        return tx.set(*args, **kwargs)

                    def query(self, *args, lock=False, **kwargs):
                        seen.append(lock)
                        return tx.query(*args, lock=lock, **kwargs)

                return fn(_Tx())

            return record_store.run_transaction(_wrapped)

    jobs.create(fields={"objectPath": "p"})
    jobs.list(stage="parsing")
    manager = LeaseManager(record_store=RecordingStore(), config=config, now_fn=clock)

    assert manager.claim_one("parsing") is not None
    assert seen == [True]
