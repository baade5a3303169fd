# routes/batch.py
import logging

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from schemas.requests import JobStatusChangeRequest, ReconcileRequest
from services.batch_jobs import apply_status_change
from services.batch_orchestrator import submit_batch
from services.events import parse_submission_event
from services.job_status import get_job_status, refresh_job_status, to_status_response
from services.reconciler import reconcile_output
from services.redis_client import get_redis

router = APIRouter(prefix="/batch", tags=["batch"])
logger = logging.getLogger("api.batch")


@router.post("/jobs", status_code=202)
# Accepts the raw submission object or an API-gateway style {"body": "<json>"} wrapper.
def submit_batch_job(payload: dict = Body(...)):
    request = parse_submission_event(payload)
    result = submit_batch(request, r=get_redis())
    return JSONResponse(status_code=202, content=result)


@router.get("/jobs/{job_id}")
def read_batch_job(job_id: str):
    return to_status_response(get_job_status(get_redis(), job_id))


@router.post("/jobs/{job_id}/status")
# Push delivery of job lifecycle changes (EventBridge relay, worker callbacks).
def change_batch_job_status(job_id: str, payload: JobStatusChangeRequest):
    record = apply_status_change(
        get_redis(),
        job_id=job_id,
        status=payload.status,
        error_message=payload.error_message,
        source="api",
    )
    return to_status_response(record)


@router.post("/jobs/{job_id}/refresh")
# Poll delivery of job lifecycle changes.
def refresh_batch_job(job_id: str):
    return to_status_response(refresh_job_status(get_redis(), job_id))


@router.post("/results")
def reconcile_batch_results(payload: ReconcileRequest):
    return reconcile_output(payload.output_uri, r=get_redis())
