import pathlib
import sys
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from velocity.config import PipelineConfig
from velocity.leases import LeaseManager
from velocity.main import create_app
from velocity.object_storage import LocalObjectStorage, ObjectStorageConfig
from velocity.pipeline import build_services
from velocity.record_store import InMemoryRecordStore
from velocity.repositories import JobsRepository, ReferenceDataRepository


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_pdf(*lines: str) -> bytes:
    import pymupdf

    doc = pymupdf.open()
    page = doc.new_page()
    y = 72
    for line in lines:
        page.insert_text((72, y), line, fontsize=12)
        y += 18
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture(autouse=True)
def isolate_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("VELOCITY_RECORD_STORE_BACKEND", "memory")
    monkeypatch.setenv("VELOCITY_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.delenv("WORKER_SECRET", raising=False)
    monkeypatch.delenv("X_WORKER_SECRET", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("VELOCITY_API_HOST", raising=False)
    monkeypatch.delenv("VELOCITY_API_PORT", raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(lease_duration_ms=60_000)


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def document_store(tmp_path: pathlib.Path) -> LocalObjectStorage:
    return LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            bucket="velocity-test",
            root=str(tmp_path / "docs"),
            prefix="",
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=True,
        )
    )


@pytest.fixture
def jobs(record_store, clock) -> JobsRepository:
    return JobsRepository(record_store=record_store, now_fn=clock)


@pytest.fixture
def references(record_store) -> ReferenceDataRepository:
    return ReferenceDataRepository(record_store=record_store)


@pytest.fixture
def lease_manager(record_store, config, clock) -> LeaseManager:
    return LeaseManager(record_store=record_store, config=config, now_fn=clock)


@pytest.fixture
def services(record_store, document_store):
    return build_services(
        config=PipelineConfig(),
        record_store=record_store,
        document_store=document_store,
        environ={},
    )


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services))
