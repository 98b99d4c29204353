from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


def error_to_dict(exc: BaseException) -> dict[str, Any]:
    """Structured error info persisted on a job record."""
    return {
        "name": type(exc).__name__,
        "code": getattr(exc, "code", None),
        "message": str(getattr(exc, "message", "") or exc) or type(exc).__name__,
    }
