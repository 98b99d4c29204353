from __future__ import annotations

from typing import Any

from velocity.errors import ApiError
from velocity.repositories.jobs import JobsRepository

APP_STATUSES = ("New", "In Review", "Approved", "Denied", "Closed")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "New": {"In Review"},
    "In Review": {"Approved", "Denied"},
    "Approved": {"Closed"},
    "Denied": {"Closed"},
    "Closed": set(),
}


def _invalid(message: str, *, code: str = "WORKFLOW_INVALID_TRANSITION", http_status: int = 409) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=http_status,
    )


def allowed_next_statuses(current: str) -> list[str]:
    return [current, *sorted(ALLOWED_TRANSITIONS.get(current, set()))]


def validate_status_change(*, current: str, new_status: str, underwriter_id: str | None) -> None:
    """Raise when `current -> new_status` is not a legal workflow move."""
    if new_status not in APP_STATUSES:
        raise _invalid(f"unknown status: {new_status}", code="WORKFLOW_STATUS_INVALID", http_status=400)
    if new_status == current:
        return
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise _invalid(f"invalid transition: {current} -> {new_status}")
    if new_status == "Approved" and not (underwriter_id or "").strip():
        raise _invalid("cannot approve until an underwriter is assigned")


def change_status(
    jobs: JobsRepository,
    *,
    job_id: str,
    new_status: str,
    underwriter_id: str | None = None,
) -> dict[str, Any]:
    """Apply a workflow move; an underwriter given here is assigned in the same write."""
    fields: dict[str, Any] = {"status": new_status}
    if underwriter_id is not None:
        fields["underwriterId"] = underwriter_id.strip()

    def _check(current: dict[str, Any]) -> None:
        assigned = underwriter_id if underwriter_id is not None else current.get("underwriterId")
        validate_status_change(
            current=str(current.get("status") or "New"),
            new_status=new_status,
            underwriter_id=str(assigned or ""),
        )

    return jobs.update_if(job_id, check=_check, fields=fields)
