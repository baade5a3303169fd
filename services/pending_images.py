import os
from datetime import datetime, timezone

from schemas.job_contract import PENDING_IMAGE_STATUS_PROCESSED

_FORMATS_BY_EXTENSION = {
    ".jpg": "jpeg",
    ".jpeg": "jpeg",
    ".png": "png",
    ".webp": "webp",
    ".gif": "gif",
}


def pending_image_key(image_id: str) -> str:
    return f"pending_image:{image_id}"


def get_pending_image(r, image_id: str) -> dict | None:
    data = r.hgetall(pending_image_key(image_id))
    return data or None


def image_format_for_key(s3_key: str) -> str:
    ext = os.path.splitext(str(s3_key or "").strip().lower())[1]
    return _FORMATS_BY_EXTENSION.get(ext, "jpeg")


def mark_processed(r, image_id: str, *, job_id: str, transaction_id: str, s3_key: str | None = None) -> None:
    key = pending_image_key(image_id)
    if not r.exists(key):
        return
    mapping = {
        "status": PENDING_IMAGE_STATUS_PROCESSED,
        "job_id": job_id,
        "transaction_id": transaction_id,
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }
    if s3_key:
        mapping["s3_key"] = s3_key
    r.hset(key, mapping=mapping)
