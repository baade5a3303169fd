import logging

from botocore.exceptions import BotoCoreError, ClientError

from schemas.job_contract import JOB_STATUS_FAILED
from schemas.responses import BatchJobStatusResponse
from services.batch_jobs import apply_status_change, find_job_by_job_id
from services.bedrock import get_batch_job
from services.errors import BatchServiceUnavailable, JobNotFound
from utils.status_machine import normalize_job_status

logger = logging.getLogger("api.job_status")


def to_status_response(record: dict) -> dict:
    def _int(name):
        value = record.get(name)
        if value in (None, ""):
            return None
        return int(value)

    return BatchJobStatusResponse(
        job_id=record.get("job_id") or "",
        intent_id=record.get("intent_id") or "",
        user_id=record.get("user_id") or "",
        status=record.get("status") or "",
        model_id=record.get("model_id") or None,
        pending_image_count=_int("pending_image_count") or 0,
        submit_time=record.get("submit_time") or None,
        updated_at=record.get("updated_at") or None,
        completed_at=record.get("completed_at") or None,
        success_count=_int("success_count"),
        failure_count=_int("failure_count"),
        total_count=_int("total_count"),
        error_message=record.get("error_message") or None,
        ttl=_int("ttl"),
    ).model_dump(by_alias=True)


def get_job_status(r, job_id: str) -> dict:
    record = find_job_by_job_id(r, job_id)
    if not record:
        raise JobNotFound(f"Batch job {job_id} not found", details={"job_id": job_id})
    return record


def refresh_job_status(r, job_id: str, *, bedrock_client=None) -> dict:
    """Poll Bedrock for the job and feed its status through the status change path."""
    record = get_job_status(r, job_id)
    try:
        remote = get_batch_job(record.get("job_arn") or job_id, client=bedrock_client)
    except (BotoCoreError, ClientError) as exc:
        raise BatchServiceUnavailable(
            "Batch inference service unavailable while polling job status",
            details={"job_id": job_id, "error": f"{exc.__class__.__name__}: {exc}"},
        ) from exc

    target = normalize_job_status(remote["status"])
    if not target:
        logger.warning("job_status_poll_unknown job_id=%s remote_status=%s", job_id, remote["status"])
        return record
    if target == (record.get("status") or "").upper():
        return record

    return apply_status_change(
        r,
        job_id=job_id,
        status=target,
        error_message=remote["message"] if target == JOB_STATUS_FAILED else None,
        source="poll",
    )
