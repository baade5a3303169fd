# User value: This file turns one receipt-batch request into exactly one Bedrock job, however often the client retries.
import logging

from botocore.exceptions import BotoCoreError, ClientError

import config
from schemas.job_contract import JOB_STATUS_SUBMITTED
from schemas.requests import BatchSubmitRequest
from schemas.responses import BatchSubmitResponse
from services.batch_eta import estimate_batch_duration_sec
from services.batch_jobs import check_intent, record_job
from services.bedrock import stop_batch_job, submit_batch_job
from services.feature_flags import is_orphan_job_stop_enabled
from services.manifest import build_manifest
from services.redis_client import get_redis
from services.s3 import s3_uri
from utils.metrics import incr
from utils.stage_logging import log_stage

logger = logging.getLogger("api.batch")


def build_status_url(job_id: str) -> str:
    return f"{config.API_BASE_URL}/batch/jobs/{job_id}"


def output_location() -> str:
    return s3_uri(config.BUCKET_NAME, f"{config.OUTPUT_PREFIX}/")


def _response(*, job_id: str, image_count: int, cached: bool, status: str) -> dict:
    return BatchSubmitResponse(
        job_id=job_id,
        status_url=build_status_url(job_id),
        cached=cached,
        estimated_duration=estimate_batch_duration_sec(image_count),
        image_count=image_count,
        status=status,
    ).model_dump(by_alias=True)


def _record_image_count(record: dict, fallback: int = 0) -> int:
    try:
        return int(record.get("pending_image_count") or fallback)
    except (TypeError, ValueError):
        return fallback


# Our own job lost the intent race; nobody will ever reconcile it.
def _stop_orphaned_job(*, job_arn: str, job_id: str, intent_id: str, winner_job_id: str, bedrock_client=None) -> None:
    if not is_orphan_job_stop_enabled():
        logger.warning(
            "orphaned_batch_job_left_running job_id=%s intent_id=%s winner_job_id=%s",
            job_id,
            intent_id,
            winner_job_id,
        )
        return
    try:
        stop_batch_job(job_arn or job_id, client=bedrock_client)
        incr("api_batch_orphan_jobs_stopped_total")
        logger.info("orphaned_batch_job_stopped job_id=%s intent_id=%s", job_id, intent_id)
    except (BotoCoreError, ClientError) as exc:
        incr("api_batch_orphan_jobs_stop_failed_total")
        logger.warning(
            "orphaned_batch_job_stop_failed job_id=%s intent_id=%s error=%s: %s",
            job_id,
            intent_id,
            exc.__class__.__name__,
            exc,
        )


def submit_batch(
    request: BatchSubmitRequest,
    *,
    r=None,
    s3_client=None,
    bedrock_client=None,
) -> dict:
    """Idempotency check, manifest build, Bedrock submit, conditional record.

    The steps run strictly in order. The read-check only saves work in the
    common case; the conditional write in record_job decides which of two
    concurrent requests for one intent owns the job.
    """
    r = r or get_redis()
    intent_id = request.intent_id
    user_id = request.user_id

    log_stage(
        job_id=None,
        stage="BATCH_REQUEST",
        event="STARTED",
        intent_id=intent_id,
        user_id=user_id,
        model_id=request.model_id,
        requested_images=len(request.pending_image_ids),
    )

    gate = check_intent(r, intent_id)
    if gate["cached"]:
        record = gate["record"]
        incr("api_batch_idempotent_reused_total", path="read_check")
        log_stage(
            job_id=gate["job_id"],
            stage="IDEMPOTENCY_CHECK",
            event="COMPLETED",
            intent_id=intent_id,
            user_id=user_id,
            message="duplicate_reused_existing_job",
        )
        return _response(
            job_id=gate["job_id"],
            image_count=_record_image_count(record),
            cached=True,
            status=record.get("status") or JOB_STATUS_SUBMITTED,
        )

    manifest = build_manifest(
        r,
        intent_id=intent_id,
        image_ids=request.pending_image_ids,
        model_id=request.model_id,
        user_id=user_id,
        s3_client=s3_client,
    )

    submitted = submit_batch_job(
        manifest_uri=manifest["manifest_uri"],
        model_id=request.model_id,
        output_uri=output_location(),
        intent_id=intent_id,
        client=bedrock_client,
    )

    won, record = record_job(
        r,
        intent_id=intent_id,
        job_id=submitted["job_id"],
        job_arn=submitted["job_arn"],
        user_id=user_id,
        pending_image_count=manifest["image_count"],
        model_id=request.model_id,
        manifest_uri=manifest["manifest_uri"],
        output_uri=output_location(),
    )

    if not won:
        winner_job_id = record["job_id"]
        if winner_job_id != submitted["job_id"]:
            _stop_orphaned_job(
                job_arn=submitted["job_arn"],
                job_id=submitted["job_id"],
                intent_id=intent_id,
                winner_job_id=winner_job_id,
                bedrock_client=bedrock_client,
            )
        incr("api_batch_idempotent_reused_total", path="conditional_write")
        log_stage(
            job_id=winner_job_id,
            stage="BATCH_REQUEST",
            event="COMPLETED",
            intent_id=intent_id,
            user_id=user_id,
            message="duplicate_resolved_by_conditional_write",
        )
        return _response(
            job_id=winner_job_id,
            image_count=_record_image_count(record, fallback=manifest["image_count"]),
            cached=True,
            status=record.get("status") or JOB_STATUS_SUBMITTED,
        )

    incr("api_batch_jobs_submitted_total", model_id=request.model_id)
    log_stage(
        job_id=submitted["job_id"],
        stage="BATCH_REQUEST",
        event="COMPLETED",
        intent_id=intent_id,
        user_id=user_id,
        image_count=manifest["image_count"],
        skipped_count=len(manifest["skipped_image_ids"]),
    )
    return _response(
        job_id=submitted["job_id"],
        image_count=manifest["image_count"],
        cached=False,
        status=JOB_STATUS_SUBMITTED,
    )
