import logging
from typing import Optional

from schemas.job_contract import (
    BEDROCK_STATUS_MAP,
    JOB_STATUS_SUBMITTED,
    JOB_STATUS_RUNNING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUSES,
    TERMINAL_STATUSES,
)

logger = logging.getLogger("api.status_machine")

# Lifecycle order. A job moves forward only; terminal statuses accept themselves.
_RANK = {
    JOB_STATUS_SUBMITTED: 0,
    JOB_STATUS_RUNNING: 1,
    JOB_STATUS_COMPLETED: 2,
    JOB_STATUS_FAILED: 2,
}


def _norm(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    s = str(status).strip().upper()
    return s or None


def normalize_job_status(raw: Optional[str]) -> Optional[str]:
    """Accept our statuses or Bedrock's (InProgress, PartiallyCompleted, ...)."""
    s = _norm(raw)
    if not s:
        return None
    if s in JOB_STATUSES:
        return s
    return BEDROCK_STATUS_MAP.get(s.replace("_", ""))


def is_allowed_transition(current: Optional[str], target: Optional[str]) -> bool:
    target_n = _norm(target)
    if not target_n:
        return True
    if target_n not in _RANK:
        return False
    current_n = _norm(current)
    if current_n is None:
        return target_n == JOB_STATUS_SUBMITTED
    if current_n == target_n:
        return True
    if current_n in TERMINAL_STATUSES or current_n not in _RANK:
        return False
    return _RANK[target_n] > _RANK[current_n]


def guarded_hset(r, *, key: str, mapping: dict, context: str, request_id: str = "") -> tuple[bool, Optional[str], Optional[str]]:
    """HSET ``mapping`` into ``key`` unless its ``status`` would move backwards.

    Returns ``(applied, current_status, target_status)``.
    """
    target = _norm(mapping.get("status"))
    if not target:
        r.hset(key, mapping=mapping)
        return True, None, None

    current = _norm(r.hget(key, "status"))
    if not is_allowed_transition(current, target):
        logger.warning(
            "status_transition_blocked context=%s key=%s current=%s target=%s request_id=%s",
            context,
            key,
            current,
            target,
            request_id,
        )
        return False, current, target

    r.hset(key, mapping=mapping)
    if current == target and current in TERMINAL_STATUSES:
        logger.info("status_terminal_repeat context=%s key=%s status=%s", context, key, target)
    return True, current, target
