from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_LEASE_DURATION_MS = 5 * 60 * 1000
DEFAULT_DOWNLOAD_RETRY_COUNT = 1
DEFAULT_MIN_DOCUMENT_BYTES = 50
DEFAULT_EVIDENCE_MAX_CHARS = 160
DEFAULT_CLAIM_SCAN_LIMIT = 25


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class PipelineConfig:
    """Options shared by the lease manager, both workers and the driver.

    Built once by the caller and passed into constructors; nothing in the
    pipeline reads the process environment on its own.
    """

    lease_duration_ms: int = DEFAULT_LEASE_DURATION_MS
    download_retry_count: int = DEFAULT_DOWNLOAD_RETRY_COUNT
    min_document_bytes: int = DEFAULT_MIN_DOCUMENT_BYTES
    evidence_max_chars: int = DEFAULT_EVIDENCE_MAX_CHARS
    claim_scan_limit: int = DEFAULT_CLAIM_SCAN_LIMIT
    worker_secret: str = ""
    cron_secret: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        worker_secret = str(env.get("WORKER_SECRET", "") or env.get("X_WORKER_SECRET", "")).strip()
        return cls(
            lease_duration_ms=_env_int(
                env, "VELOCITY_LEASE_DURATION_MS", default=DEFAULT_LEASE_DURATION_MS, minimum=1000
            ),
            download_retry_count=_env_int(
                env, "VELOCITY_DOWNLOAD_RETRY_COUNT", default=DEFAULT_DOWNLOAD_RETRY_COUNT, minimum=0
            ),
            min_document_bytes=_env_int(
                env, "VELOCITY_MIN_DOCUMENT_BYTES", default=DEFAULT_MIN_DOCUMENT_BYTES, minimum=1
            ),
            evidence_max_chars=_env_int(
                env, "VELOCITY_EVIDENCE_MAX_CHARS", default=DEFAULT_EVIDENCE_MAX_CHARS, minimum=1
            ),
            claim_scan_limit=_env_int(
                env, "VELOCITY_CLAIM_SCAN_LIMIT", default=DEFAULT_CLAIM_SCAN_LIMIT, minimum=1
            ),
            worker_secret=worker_secret,
            cron_secret=str(env.get("CRON_SECRET", "")).strip(),
        )

    @property
    def download_attempts(self) -> int:
        return 1 + max(0, self.download_retry_count)
