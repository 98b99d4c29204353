from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from velocity.models import WorkerResult
from velocity.routes._deps import require_shared_secret, services_from_request, trace_id_from_request
from velocity.schemas import error_envelope, success_envelope

router = APIRouter(prefix="/api", tags=["workers"])


def _worker_response(request: Request, result: WorkerResult) -> JSONResponse:
    if result.crashed:
        return JSONResponse(
            status_code=500,
            content=error_envelope(
                code="WORKER_CRASHED",
                message=result.error or "worker crashed",
                error_class="transient",
                retryable=True,
                trace_id=trace_id_from_request(request),
                details={"processed": 0, "jobId": result.job_id, "error": result.error},
            ),
        )
    return JSONResponse(status_code=200, content=success_envelope(result.as_dict(), trace_id_from_request(request)))


@router.get("/worker/files/process")
def files_worker_alive(request: Request):
    return success_envelope(
        {"ok": True, "msg": "Parsing worker alive. Use POST to process one job."},
        trace_id_from_request(request),
    )


@router.post("/worker/files/process")
def files_worker_process(
    request: Request,
    x_worker_secret: str | None = Header(default=None, alias="x-worker-secret"),
):
    services = services_from_request(request)
    require_shared_secret(services.config.worker_secret, x_worker_secret, name="x-worker-secret")
    return _worker_response(request, services.parsing_worker.process_one())


@router.get("/worker/ai/process")
def ai_worker_alive(request: Request):
    return success_envelope(
        {"ok": True, "msg": "Rule evaluation worker alive. Use POST to process one job."},
        trace_id_from_request(request),
    )


@router.post("/worker/ai/process")
def ai_worker_process(
    request: Request,
    x_worker_secret: str | None = Header(default=None, alias="x-worker-secret"),
):
    services = services_from_request(request)
    require_shared_secret(services.config.worker_secret, x_worker_secret, name="x-worker-secret")
    return _worker_response(request, services.analysis_worker.process_one())


@router.api_route("/cron/tick", methods=["GET", "POST"])
def cron_tick(
    request: Request,
    secret: str | None = Query(default=None),
    x_cron_secret: str | None = Header(default=None, alias="x-cron-secret"),
):
    services = services_from_request(request)
    require_shared_secret(services.config.cron_secret, x_cron_secret or secret, name="cron secret")
    result = services.driver.tick()
    return success_envelope(result.as_dict(), trace_id_from_request(request))
