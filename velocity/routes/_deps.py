from __future__ import annotations

import hmac
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from velocity.errors import ApiError
from velocity.pipeline import PipelineServices
from velocity.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def services_from_request(request: Request) -> PipelineServices:
    return request.app.state.services


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def require_shared_secret(expected: str, provided: str | None, *, name: str) -> None:
    """No-op when no secret is configured; otherwise a constant-time compare."""
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise _unauthorized(f"missing or invalid {name}")
