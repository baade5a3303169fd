import json
import logging
from datetime import datetime, timezone
from typing import Any

from utils.request_id import get_request_id

logger = logging.getLogger("api.stage")


def _scalar(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def log_stage(
    *,
    job_id: str | None,
    stage: str,
    event: str,
    intent_id: str | None = None,
    user_id: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Emit one pipeline milestone as a ``stage_event {json}`` line.

    ``intent_id``, ``job_id`` and ``user_id`` are the correlation keys across
    submit, status and reconcile. FAILED events (or any event carrying
    ``error``) log at error level.
    """
    event = event.upper()
    payload = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "stage": stage,
        "event": event,
        "job_id": job_id or "",
        "intent_id": intent_id,
        "user_id": user_id,
        "request_id": get_request_id(),
        "error": error,
    }
    payload.update({k: _scalar(v) for k, v in extra.items()})
    payload = {k: v for k, v in payload.items() if v not in (None, "") or k == "job_id"}

    level = logging.ERROR if error or event == "FAILED" else logging.INFO
    logger.log(level, "stage_event %s", json.dumps(payload, ensure_ascii=False))
