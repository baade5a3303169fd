"""
Batch result reconciler.

Streams a finished job's JSONL output, maps every record back to its receipt
image through ``customData`` and upserts one transaction per image for the
user who submitted the job.
"""

import hashlib
import json
import logging
import os
import re
from datetime import datetime, timedelta, timezone

from botocore.exceptions import BotoCoreError, ClientError

import config
from schemas.job_contract import (
    GUEST_USER_PREFIXES,
    JOB_STATUS_COMPLETED,
    TRANSACTION_STATUS_FAILED,
    TRANSACTION_STATUS_UNCONFIRMED,
)
from schemas.responses import ReconcileSummary
from schemas.transactions import BatchOutputLine, OcrResult
from services.batch_jobs import apply_status_change, find_job_by_job_id
from services.errors import InvalidStatusTransition, RequestValidationFailed, StorageUnavailable
from services.feature_flags import is_processed_image_migration_enabled
from services.pending_images import get_pending_image, mark_processed
from services.redis_client import get_redis
from services.s3 import copy_object, delete_object, iter_object_lines, parse_s3_uri
from utils.metrics import incr
from utils.stage_logging import log_stage

logger = logging.getLogger("api.reconcile")

_DAY_SEC = 24 * 3600
_JST = timezone(timedelta(hours=9))
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def job_id_from_output_key(key: str) -> str | None:
    parts = str(key or "").split("/")
    if len(parts) < 3 or parts[0] != config.OUTPUT_PREFIX or not parts[1]:
        return None
    return parts[1]


def is_result_object(key: str) -> bool:
    name = os.path.basename(str(key or ""))
    if name == "manifest.json.out":
        return False
    return name.endswith(".jsonl") or name.endswith(".jsonl.out")


def transaction_id_for(job_id: str, image_id: str) -> str:
    return hashlib.sha256(f"{job_id}#{image_id}".encode("utf-8")).hexdigest()[:24]


def transaction_key(user_id: str, transaction_id: str) -> str:
    return f"transaction:{user_id}:{transaction_id}"


def user_transactions_key(user_id: str) -> str:
    return f"user_transactions:{user_id}"


def is_guest_user(user_id: str) -> bool:
    return str(user_id or "").startswith(GUEST_USER_PREFIXES)


def parse_ocr_result(text: str | None) -> OcrResult | None:
    if not text:
        return None
    cleaned = _CODE_FENCE_RE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
        if not isinstance(data, dict):
            return None
        return OcrResult.model_validate(data)
    except ValueError:
        # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors.
        return None


def upsert_transaction(
    r,
    *,
    user_id: str,
    job_id: str,
    image_id: str,
    ocr: OcrResult | None,
    raw_text: str | None,
    s3_key: str | None = None,
    model_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    now_iso = now.isoformat()
    transaction_id = transaction_id_for(job_id, image_id)
    key = transaction_key(user_id, transaction_id)

    record = {
        "user_id": user_id,
        "transaction_id": transaction_id,
        "image_id": image_id,
        "job_id": job_id,
        "s3_key": s3_key or "",
        "ai_result": raw_text or "",
        "processing_model": model_id or "",
        "updated_at": now_iso,
    }
    if ocr is not None:
        record.update(
            {
                "status": TRANSACTION_STATUS_UNCONFIRMED,
                "amount": ocr.amount,
                "type": ocr.type,
                "merchant": ocr.merchant,
                "category": ocr.category,
                "receipt_date": ocr.date,
                "description": ocr.description,
            }
        )
        if ocr.confidence is not None:
            record["ai_confidence"] = ocr.confidence
    else:
        record["status"] = TRANSACTION_STATUS_FAILED

    ttl = None
    if is_guest_user(user_id):
        ttl = int(now.timestamp()) + config.GUEST_TTL_DAYS * _DAY_SEC
        record["ttl"] = ttl

    r.hsetnx(key, "created_at", now_iso)
    r.hset(key, mapping=record)
    if ttl is not None:
        r.expireat(key, ttl)
    r.sadd(user_transactions_key(user_id), transaction_id)
    return record


def processed_key_for(s3_key: str, now: datetime | None = None) -> str:
    day = (now or datetime.now(timezone.utc)).astimezone(_JST).strftime("%Y-%m-%d")
    return f"{config.PROCESSED_PREFIX}/{day}/{os.path.basename(s3_key)}"


def _copy_to_processed(s3_key: str, *, job_id: str, image_id: str, s3_client=None) -> str | None:
    destination = processed_key_for(s3_key)
    try:
        copy_object(source_key=s3_key, destination_key=destination, client=s3_client)
    except (BotoCoreError, ClientError) as exc:
        incr("api_reconcile_image_migration_failed_total")
        logger.warning(
            "image_migration_failed job_id=%s image_id=%s s3_key=%s error=%s: %s",
            job_id,
            image_id,
            s3_key,
            exc.__class__.__name__,
            exc,
        )
        return None
    return destination


# The source goes only after Redis points at the copy; a failure here leaves a stray upload.
def _delete_source(s3_key: str, *, job_id: str, image_id: str, s3_client=None) -> None:
    try:
        delete_object(s3_key, client=s3_client)
    except (BotoCoreError, ClientError) as exc:
        incr("api_reconcile_image_migration_failed_total")
        logger.warning(
            "image_source_delete_failed job_id=%s image_id=%s s3_key=%s error=%s: %s",
            job_id,
            image_id,
            s3_key,
            exc.__class__.__name__,
            exc,
        )


def reconcile_output(output_uri: str, *, r=None, s3_client=None, job_id: str | None = None) -> dict:
    """Reconcile one batch output object.

    Unparseable lines are skipped and counted. Records whose OCR text does not
    match the result schema become ``failed`` transactions. When the job's
    owner cannot be resolved nothing is written at all.
    """
    r = r or get_redis()
    try:
        _, key = parse_s3_uri(output_uri)
    except ValueError as exc:
        raise RequestValidationFailed(str(exc)) from exc

    job_id = job_id or job_id_from_output_key(key)
    if not job_id:
        raise RequestValidationFailed(
            f"Cannot derive jobId from output key {key}; expected {config.OUTPUT_PREFIX}/{{jobId}}/..."
        )

    log_stage(job_id=job_id, stage="RECONCILE", event="STARTED", output_uri=output_uri)

    record = find_job_by_job_id(r, job_id)
    if not record or not record.get("user_id"):
        incr("api_reconcile_owner_missing_total")
        log_stage(
            job_id=job_id,
            stage="RECONCILE_OWNER_LOOKUP",
            event="FAILED",
            output_uri=output_uri,
            error="job record missing or expired; no transactions written",
        )
        return ReconcileSummary(job_id=job_id, owner_missing=True).model_dump(by_alias=True)

    user_id = record["user_id"]
    intent_id = record.get("intent_id")
    model_id = record.get("model_id")
    migrate = is_processed_image_migration_enabled()

    total_lines = 0
    parse_errors = 0
    success_count = 0
    failure_count = 0
    migrated_count = 0

    try:
        for line_number, line in enumerate(iter_object_lines(output_uri, client=s3_client), start=1):
            if not line.strip():
                continue
            total_lines += 1

            try:
                parsed = BatchOutputLine.from_raw(json.loads(line))
            except ValueError as exc:
                parse_errors += 1
                logger.warning(
                    "reconcile_line_unparseable job_id=%s intent_id=%s line=%s error=%s preview=%s",
                    job_id,
                    intent_id,
                    line_number,
                    exc.__class__.__name__,
                    line[:200],
                )
                continue

            image_id = parsed.custom_data
            ocr = parse_ocr_result(parsed.output_text)
            if ocr is None:
                logger.warning(
                    "reconcile_ocr_result_invalid job_id=%s intent_id=%s image_id=%s",
                    job_id,
                    intent_id,
                    image_id,
                )

            pending = get_pending_image(r, image_id) or {}
            source_key = pending.get("s3_key") or None
            s3_key = source_key
            if migrate and source_key and not source_key.startswith(f"{config.PROCESSED_PREFIX}/"):
                s3_key = _copy_to_processed(source_key, job_id=job_id, image_id=image_id, s3_client=s3_client) or source_key

            tx = upsert_transaction(
                r,
                user_id=user_id,
                job_id=job_id,
                image_id=image_id,
                ocr=ocr,
                raw_text=parsed.output_text,
                s3_key=s3_key,
                model_id=model_id,
            )
            mark_processed(r, image_id, job_id=job_id, transaction_id=tx["transaction_id"], s3_key=s3_key)

            if s3_key != source_key:
                _delete_source(source_key, job_id=job_id, image_id=image_id, s3_client=s3_client)
                migrated_count += 1

            if ocr is None:
                failure_count += 1
            else:
                success_count += 1
    except StorageUnavailable as exc:
        exc.details["job_id"] = job_id
        log_stage(
            job_id=job_id,
            stage="RECONCILE",
            event="FAILED",
            intent_id=intent_id,
            user_id=user_id,
            output_uri=output_uri,
            lines_done=total_lines,
            error=exc.message,
        )
        raise

    stats = {
        "success_count": success_count,
        "failure_count": failure_count,
        "total_count": success_count + failure_count,
    }
    try:
        apply_status_change(r, job_id=job_id, status=JOB_STATUS_COMPLETED, stats=stats, source="reconcile")
    except InvalidStatusTransition as exc:
        logger.warning("reconcile_status_not_updated job_id=%s reason=%s", job_id, exc.message)

    incr("api_reconcile_transactions_total", outcome="success", value=success_count)
    incr("api_reconcile_transactions_total", outcome="failed", value=failure_count)
    log_stage(
        job_id=job_id,
        stage="RECONCILE",
        event="COMPLETED",
        intent_id=intent_id,
        user_id=user_id,
        total_lines=total_lines,
        parse_errors=parse_errors,
        success_count=success_count,
        failure_count=failure_count,
        migrated_count=migrated_count,
    )
    return ReconcileSummary(
        job_id=job_id,
        intent_id=intent_id,
        total_lines=total_lines,
        parse_errors=parse_errors,
        success_count=success_count,
        failure_count=failure_count,
        migrated_count=migrated_count,
    ).model_dump(by_alias=True)
