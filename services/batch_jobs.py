# services/batch_jobs.py
import hashlib
import logging
import re
from datetime import datetime, timezone

from redis.exceptions import RedisError

import config
from schemas.job_contract import JOB_STATUS_SUBMITTED, TERMINAL_STATUSES
from services.errors import (
    IdempotencyStoreUnavailable,
    InvalidStatusTransition,
    JobNotFound,
    JobRecordWriteFailed,
    RequestValidationFailed,
)
from utils.metrics import incr
from utils.request_id import get_request_id
from utils.stage_logging import log_stage
from utils.status_machine import normalize_job_status, guarded_hset

logger = logging.getLogger("api.batch_jobs")

_DAY_SEC = 24 * 3600
_KEY_SAFE_RE = re.compile(r"[A-Za-z0-9_.:-]{1,128}")


def intent_key_part(intent_id: str) -> str:
    """Key segment for an intent id.

    Plain ids are used as is. Anything else is hashed; ``=`` never appears in
    a plain id, so the two forms cannot collide. The raw id is always stored
    in the record itself.
    """
    if _KEY_SAFE_RE.fullmatch(intent_id):
        return intent_id
    return "sha256=" + hashlib.sha256(intent_id.encode("utf-8")).hexdigest()


def job_record_key(intent_id: str) -> str:
    return f"batch_job:{intent_key_part(intent_id)}"


def job_index_key(job_id: str) -> str:
    return f"batch_job_by_job_id:{job_id}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Idempotency gate
# ---------------------------------------------------------------------------

def check_intent(r, intent_id: str) -> dict:
    """Point lookup of the Job Record for ``intent_id``.

    Returns ``{"cached": True, "job_id": ..., "record": {...}}`` when a record
    exists, otherwise ``{"cached": False}``. A store error is raised as
    IdempotencyStoreUnavailable: without a verified answer the caller must not
    submit, or a retry could start a second job.
    """
    try:
        data = r.hgetall(job_record_key(intent_id)) or {}
    except RedisError as exc:
        incr("api_batch_idempotency_check_failed_total")
        log_stage(
            job_id=None,
            stage="IDEMPOTENCY_CHECK",
            event="FAILED",
            intent_id=intent_id,
            error=f"{exc.__class__.__name__}: {exc}",
        )
        raise IdempotencyStoreUnavailable(
            "Idempotency store unavailable; retry the request with the same intentId",
            details={"intent_id": intent_id},
        ) from exc

    job_id = data.get("job_id")
    if job_id:
        return {"cached": True, "job_id": job_id, "record": data}
    return {"cached": False}


# ---------------------------------------------------------------------------
# Job metadata recorder
# ---------------------------------------------------------------------------

def record_job(
    r,
    *,
    intent_id: str,
    job_id: str,
    user_id: str,
    pending_image_count: int,
    model_id: str,
    manifest_uri: str,
    output_uri: str,
    job_arn: str = "",
    now: datetime | None = None,
) -> tuple[bool, dict]:
    """Create the Job Record for ``intent_id`` unless one already exists.

    HSETNX on ``job_id`` is the conditional write: exactly one caller per
    intent wins it. The winner fills in the rest of the record, its TTL and the
    jobId index. A loser gets ``(False, existing_record)``; the existing record
    always carries the winning ``job_id`` because that field is the claim.
    """
    key = job_record_key(intent_id)
    now = now or _now()
    now_iso = now.isoformat()
    ttl = int(now.timestamp()) + config.JOB_RECORD_TTL_DAYS * _DAY_SEC

    try:
        won = bool(r.hsetnx(key, "job_id", job_id))
        if not won:
            existing = r.hgetall(key) or {}
            incr("api_batch_record_conflict_total")
            log_stage(
                job_id=existing.get("job_id"),
                stage="JOB_RECORD_WRITE",
                event="COMPLETED",
                intent_id=intent_id,
                user_id=user_id,
                message="conditional_write_lost",
                discarded_job_id=job_id,
            )
            return False, existing

        record = {
            "intent_id": intent_id,
            "job_id": job_id,
            "job_arn": job_arn,
            "user_id": user_id,
            "status": JOB_STATUS_SUBMITTED,
            "model_id": model_id,
            "manifest_uri": manifest_uri,
            "output_uri": output_uri,
            "pending_image_count": int(pending_image_count),
            "submit_time": now_iso,
            "updated_at": now_iso,
            "ttl": ttl,
        }
        r.hset(key, mapping=record)
        r.expireat(key, ttl)
        r.set(job_index_key(job_id), intent_id, exat=ttl)
    except RedisError as exc:
        log_stage(
            job_id=job_id,
            stage="JOB_RECORD_WRITE",
            event="FAILED",
            intent_id=intent_id,
            user_id=user_id,
            error=f"{exc.__class__.__name__}: {exc}",
        )
        raise JobRecordWriteFailed(
            "Batch job metadata write failed",
            details={"intent_id": intent_id, "job_id": job_id},
        ) from exc

    log_stage(
        job_id=job_id,
        stage="JOB_RECORD_WRITE",
        event="COMPLETED",
        intent_id=intent_id,
        user_id=user_id,
        pending_image_count=int(pending_image_count),
        ttl=ttl,
    )
    return True, record


# ---------------------------------------------------------------------------
# Reverse lookup (jobId -> record)
# ---------------------------------------------------------------------------

def get_job_by_intent(r, intent_id: str) -> dict | None:
    data = r.hgetall(job_record_key(intent_id))
    return data or None


def find_job_by_job_id(r, job_id: str) -> dict | None:
    intent_id = r.get(job_index_key(job_id))
    if not intent_id:
        return None
    data = r.hgetall(job_record_key(intent_id)) or {}
    if not data or data.get("job_id") != job_id:
        logger.warning("job_index_stale job_id=%s intent_id=%s", job_id, intent_id)
        return None
    return data


# ---------------------------------------------------------------------------
# Status change (the one allowed post-creation mutation)
# ---------------------------------------------------------------------------

_STAT_FIELDS = ("success_count", "failure_count", "total_count")


def _fill_missing_stats(r, key: str, stats: dict | None) -> dict:
    filled = {}
    for field in _STAT_FIELDS:
        if not stats or stats.get(field) is None:
            continue
        value = str(int(stats[field]))
        if r.hsetnx(key, field, value):
            filled[field] = value
    return filled


def apply_status_change(
    r,
    *,
    job_id: str,
    status: str,
    error_message: str | None = None,
    stats: dict | None = None,
    source: str = "event",
) -> dict:
    target = normalize_job_status(status)
    if not target:
        raise RequestValidationFailed(f"Unknown job status: {status}")

    record = find_job_by_job_id(r, job_id)
    if not record:
        raise JobNotFound(f"Batch job {job_id} not found", details={"job_id": job_id})

    intent_id = record["intent_id"]
    if target in TERMINAL_STATUSES and (record.get("status") or "").upper() == target:
        # Status and counts already written stay as they are; only missing counts are filled in.
        filled = _fill_missing_stats(r, job_record_key(intent_id), stats)
        logger.info(
            "job_status_terminal_repeat job_id=%s status=%s source=%s filled=%s",
            job_id,
            target,
            source,
            ",".join(sorted(filled)) or "-",
        )
        record.update(filled)
        return record

    now_iso = _now().isoformat()
    mapping = {"status": target, "updated_at": now_iso}
    if target in TERMINAL_STATUSES:
        mapping["completed_at"] = now_iso
        for field in _STAT_FIELDS:
            if stats and stats.get(field) is not None:
                mapping[field] = int(stats[field])
        if error_message:
            mapping["error_message"] = str(error_message)[:1000]

    ok, current, _ = guarded_hset(
        r,
        key=job_record_key(intent_id),
        mapping=mapping,
        context=f"JOB_STATUS_{source.upper()}",
        request_id=get_request_id() or "",
    )
    if not ok:
        log_stage(
            job_id=job_id,
            stage="JOB_STATUS_CHANGE",
            event="FAILED",
            intent_id=intent_id,
            user_id=record.get("user_id"),
            error=f"blocked {current or 'NONE'} -> {target}",
        )
        raise InvalidStatusTransition(
            f"Invalid status transition to {target} from {current or 'NONE'}",
            details={"job_id": job_id, "current": current, "target": target},
        )

    incr("api_batch_status_changes_total", status=target, source=source)
    log_stage(
        job_id=job_id,
        stage="JOB_STATUS_CHANGE",
        event="COMPLETED",
        intent_id=intent_id,
        user_id=record.get("user_id"),
        previous_status=current,
        status=target,
        source=source,
    )
    record.update({k: str(v) for k, v in mapping.items()})
    return record
