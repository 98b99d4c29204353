from __future__ import annotations

import os
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from velocity.errors import ApiError


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^\w.\- ]+", "_", value.strip())
    return cleaned or "document"


def build_object_path(*, application_id: str, filename: str, now_ms: int | None = None) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"applications/{_clean_segment(application_id)}/{stamp}__{_clean_segment(filename)}"


def _not_found(path: str) -> ApiError:
    return ApiError(
        code="DOC_NOT_FOUND",
        message=f"document not found: {path}",
        error_class="transient",
        retryable=True,
        http_status=404,
    )


def _normalize_path(path: str) -> str:
    normalized = path.strip().lstrip("/")
    if not normalized or any(part == ".." for part in normalized.split("/")):
        raise ValueError(f"invalid object path: {path!r}")
    return normalized


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


class DocumentStore:
    backend_name = "base"

    def download(self, path: str) -> bytes:
        raise NotImplementedError

    def upload(self, path: str, content_bytes: bytes, *, content_type: str | None = None) -> str:
        raise NotImplementedError


class LocalObjectStorage(DocumentStore):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket_root = Path(config.root) / config.bucket
        self._prefix = config.prefix.strip("/")
        self._bucket_root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, path: str) -> Path:
        key = _normalize_path(path)
        if self._prefix:
            key = f"{self._prefix}/{key}"
        return self._bucket_root / key

    def download(self, path: str) -> bytes:
        target = self._path_for(path)
        if not target.is_file():
            raise _not_found(path)
        return target.read_bytes()

    def upload(self, path: str, content_bytes: bytes, *, content_type: str | None = None) -> str:
        target = self._path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content_bytes)
        return _normalize_path(path)

    def reset(self) -> None:
        if not self._bucket_root.exists():
            return
        for item in sorted(self._bucket_root.rglob("*"), reverse=True):
            if item.is_file():
                item.unlink()
            elif item.is_dir():
                item.rmdir()


class S3ObjectStorage(DocumentStore):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def _key_for(self, path: str) -> str:
        key = _normalize_path(path)
        return f"{self._prefix}/{key}" if self._prefix else key

    def download(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._key_for(path))
        except self._client.exceptions.NoSuchKey as exc:
            raise _not_found(path) from exc
        return response["Body"].read()

    def upload(self, path: str, content_bytes: bytes, *, content_type: str | None = None) -> str:
        self._client.put_object(
            Bucket=self._bucket,
            Key=self._key_for(path),
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return _normalize_path(path)


def _flag(raw: str, *, default: bool) -> bool:
    value = raw.strip().lower()
    if not value:
        return default
    return value not in {"0", "false", "no", "off"}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> DocumentStore:
    env = os.environ if environ is None else environ
    backend = env.get("VELOCITY_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "velocity").strip() or "velocity",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/velocity-object-storage").strip() or "/tmp/velocity-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=_flag(env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", ""), default=True),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend == "local":
        return LocalObjectStorage(config=config)
    raise RuntimeError(f"unsupported object storage backend: {backend}")
