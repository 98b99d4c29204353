from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from velocity.analysis_worker import RuleEvaluationWorker
from velocity.config import PipelineConfig, _env_int
from velocity.leases import LeaseManager
from velocity.models import WorkerResult
from velocity.object_storage import DocumentStore, create_object_storage_from_env
from velocity.parsing_worker import ParsingWorker
from velocity.record_store import RecordStore, create_record_store_from_env
from velocity.repositories import JobsRepository, ReferenceDataRepository

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    parsing: WorkerResult
    analysis: WorkerResult

    @property
    def any_failed(self) -> bool:
        return any(r.status in {"failed", "crashed"} for r in (self.parsing, self.analysis))

    @property
    def idle(self) -> bool:
        return self.parsing.processed == 0 and self.analysis.processed == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "parsing": self.parsing.as_dict(),
            "analysis": self.analysis.as_dict(),
            "anyFailed": self.any_failed,
        }


@dataclass
class PipelineRunStats:
    ticks: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    crashed: int = 0
    skipped: int = 0

    def add(self, result: WorkerResult) -> None:
        self.processed += result.processed
        if result.status == "succeeded":
            self.succeeded += 1
        elif result.status == "failed":
            self.failed += 1
        elif result.status == "crashed":
            self.crashed += 1
        elif result.status == "skipped":
            self.skipped += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "ticks": self.ticks,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "crashed": self.crashed,
            "skipped": self.skipped,
        }


class PipelineDriver:
    """Runs the parsing worker then the analysis worker, once each per tick."""

    def __init__(
        self,
        *,
        parsing_worker: ParsingWorker,
        analysis_worker: RuleEvaluationWorker,
        poll_interval_ms: int = 1000,
    ) -> None:
        self.parsing_worker = parsing_worker
        self.analysis_worker = analysis_worker
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def tick(self) -> TickResult:
        result = TickResult(
            parsing=self.parsing_worker.process_one(),
            analysis=self.analysis_worker.process_one(),
        )
        if not result.idle:
            logger.info(
                "pipeline_tick parsing=%s analysis=%s",
                result.parsing.status,
                result.analysis.status,
            )
        return result

    def run_forever(
        self,
        *,
        stop_after_iterations: int | None = None,
        poll_interval_ms: int | None = None,
    ) -> dict[str, int]:
        interval_ms = self.poll_interval_ms if poll_interval_ms is None else max(1, int(poll_interval_ms))
        stats = PipelineRunStats()
        while True:
            current = self.tick()
            stats.ticks += 1
            stats.add(current.parsing)
            stats.add(current.analysis)
            if stop_after_iterations is not None and stats.ticks >= max(1, stop_after_iterations):
                break
            if current.idle:
                time.sleep(interval_ms / 1000.0)
        return stats.as_dict()


@dataclass
class PipelineServices:
    """Everything the HTTP app and the worker script share."""

    config: PipelineConfig
    record_store: RecordStore
    document_store: DocumentStore
    jobs: JobsRepository
    references: ReferenceDataRepository
    leases: LeaseManager
    parsing_worker: ParsingWorker
    analysis_worker: RuleEvaluationWorker
    driver: PipelineDriver


def build_services(
    *,
    config: PipelineConfig | None = None,
    record_store: RecordStore | None = None,
    document_store: DocumentStore | None = None,
    environ: Mapping[str, str] | None = None,
) -> PipelineServices:
    env = os.environ if environ is None else environ
    config = config or PipelineConfig.from_env(env)
    record_store = record_store if record_store is not None else create_record_store_from_env(env)
    document_store = document_store if document_store is not None else create_object_storage_from_env(env)

    jobs = JobsRepository(record_store=record_store)
    references = ReferenceDataRepository(record_store=record_store)
    leases = LeaseManager(record_store=record_store, config=config)
    parsing_worker = ParsingWorker(
        jobs=jobs,
        lease_manager=leases,
        document_store=document_store,
        config=config,
    )
    analysis_worker = RuleEvaluationWorker(
        jobs=jobs,
        references=references,
        lease_manager=leases,
        config=config,
    )
    driver = PipelineDriver(
        parsing_worker=parsing_worker,
        analysis_worker=analysis_worker,
        poll_interval_ms=_env_int(env, "VELOCITY_POLL_INTERVAL_MS", default=1000, minimum=1),
    )
    return PipelineServices(
        config=config,
        record_store=record_store,
        document_store=document_store,
        jobs=jobs,
        references=references,
        leases=leases,
        parsing_worker=parsing_worker,
        analysis_worker=analysis_worker,
        driver=driver,
    )
