# services/manifest.py
import base64
import json
import logging
import tempfile
import time

from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError

import config
from services.batch_jobs import intent_key_part
from services.errors import ManifestBuildFailed
from services.pending_images import get_pending_image, image_format_for_key
from services.s3 import get_object_bytes, upload_fileobj
from utils.metrics import incr
from utils.stage_logging import log_stage

logger = logging.getLogger("api.manifest")

MANIFEST_CONTENT_TYPE = "application/jsonl"

# Manifests above this size spill from memory to a temp file while building.
_SPOOL_MAX_BYTES = 16 * 1024 * 1024

OCR_PROMPT = (
    "You are a receipt analysis assistant for Japanese and English receipts. "
    "The image is a receipt or invoice. Extract the following fields and answer with a single JSON object.\n"
    "- amount: total amount as a number in yen\n"
    '- type: "income" or "expense"\n'
    "- date: transaction date as YYYY-MM-DD\n"
    "- merchant: store or counterparty name\n"
    "- category: one of sale, purchase, shipping, packaging, fee, other\n"
    "- description: short description of the transaction\n"
    "- confidence: your confidence in the extraction between 0 and 1\n"
    "Return JSON only, without markdown code fences."
)


class _ImageUnavailable(Exception):
    pass


def build_manifest_line(*, image_id: str, model_id: str, image_bytes: bytes, image_format: str) -> str:
    """One self-contained JSON record. b64encode never wraps lines."""
    entry = {
        "modelId": model_id,
        "input": {
            "text": OCR_PROMPT,
            "image": {
                "format": image_format,
                "source": {"bytes": base64.b64encode(image_bytes).decode("ascii")},
            },
        },
        "customData": image_id,
    }
    return json.dumps(entry, ensure_ascii=False, separators=(",", ":"))


def manifest_key(intent_id: str, submitted_at_ms: int | None = None) -> str:
    ts = submitted_at_ms if submitted_at_ms is not None else int(time.time() * 1000)
    return f"{config.MANIFEST_PREFIX}/manifest-{ts}-{intent_key_part(intent_id)}.jsonl"


def _load_image(r, image_id: str, s3_client) -> tuple[str, bytes]:
    try:
        pending = get_pending_image(r, image_id)
    except RedisError as exc:
        raise _ImageUnavailable(f"pending image lookup failed: {exc.__class__.__name__}: {exc}") from exc
    s3_key = (pending or {}).get("s3_key")
    if not s3_key:
        raise _ImageUnavailable("pending image not found")

    try:
        data = get_object_bytes(s3_key, client=s3_client)
    except (BotoCoreError, ClientError) as exc:
        raise _ImageUnavailable(f"image fetch failed: {exc.__class__.__name__}: {exc}") from exc
    if not data:
        raise _ImageUnavailable("image object is empty")
    return s3_key, data


def build_manifest(
    r,
    *,
    intent_id: str,
    image_ids: list[str],
    model_id: str,
    user_id: str | None = None,
    s3_client=None,
    failure_policy: str | None = None,
    min_images: int | None = None,
    max_images: int | None = None,
) -> dict:
    """Write the JSONL manifest for ``image_ids`` and return its location.

    Unreadable images are skipped with a warning under the ``skip`` policy and
    abort the build under ``abort``. Either way the build fails when fewer
    than ``min_images`` lines remain, since Bedrock rejects smaller batches.
    """
    policy = (failure_policy or config.MANIFEST_FAILURE_POLICY).strip().lower()
    min_images = config.BATCH_MIN_IMAGES if min_images is None else min_images
    max_images = config.MANIFEST_MAX_IMAGES if max_images is None else max_images

    log_stage(
        job_id=None,
        stage="MANIFEST_BUILD",
        event="STARTED",
        intent_id=intent_id,
        user_id=user_id,
        requested_images=len(image_ids),
        failure_policy=policy,
    )

    included: list[str] = []
    skipped: list[str] = []

    with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES, mode="w+b") as buf:
        for image_id in image_ids:
            if len(included) >= max_images:
                logger.info(
                    "manifest_limit_reached intent_id=%s limit=%s remaining=%s",
                    intent_id,
                    max_images,
                    len(image_ids) - len(included) - len(skipped),
                )
                break

            try:
                s3_key, data = _load_image(r, image_id, s3_client)
            except _ImageUnavailable as exc:
                incr("api_manifest_images_skipped_total", policy=policy)
                if policy == "abort":
                    log_stage(
                        job_id=None,
                        stage="MANIFEST_BUILD",
                        event="FAILED",
                        intent_id=intent_id,
                        user_id=user_id,
                        image_id=image_id,
                        error=str(exc),
                    )
                    raise ManifestBuildFailed(
                        f"Image {image_id} could not be read",
                        details={"image_id": image_id, "reason": str(exc)},
                    ) from exc
                logger.warning(
                    "manifest_image_skipped intent_id=%s image_id=%s reason=%s",
                    intent_id,
                    image_id,
                    exc,
                )
                skipped.append(image_id)
                continue

            line = build_manifest_line(
                image_id=image_id,
                model_id=model_id,
                image_bytes=data,
                image_format=image_format_for_key(s3_key),
            )
            buf.write(line.encode("utf-8"))
            buf.write(b"\n")
            included.append(image_id)

        if len(included) < min_images:
            log_stage(
                job_id=None,
                stage="MANIFEST_BUILD",
                event="FAILED",
                intent_id=intent_id,
                user_id=user_id,
                image_count=len(included),
                skipped_count=len(skipped),
                error=f"only {len(included)} readable images, minimum is {min_images}",
            )
            raise ManifestBuildFailed(
                f"Only {len(included)} readable images; at least {min_images} are required",
                details={"image_count": len(included), "skipped_image_ids": skipped[:50]},
            )

        buf.seek(0)
        stored = upload_fileobj(
            file_obj=buf,
            destination_key=manifest_key(intent_id),
            content_type=MANIFEST_CONTENT_TYPE,
            client=s3_client,
        )

    log_stage(
        job_id=None,
        stage="MANIFEST_BUILD",
        event="COMPLETED",
        intent_id=intent_id,
        user_id=user_id,
        manifest_uri=stored["s3_uri"],
        image_count=len(included),
        skipped_count=len(skipped),
    )
    return {
        "manifest_uri": stored["s3_uri"],
        "image_count": len(included),
        "image_ids": included,
        "skipped_image_ids": skipped,
    }
