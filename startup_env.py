import logging
import os
from typing import List

logger = logging.getLogger("api.startup")

_BOOL_VALUES = {"1", "0", "true", "false", "yes", "no", "on", "off"}
_BOOL_FLAGS = ("FEATURE_ORPHAN_JOB_STOP", "FEATURE_PROCESSED_IMAGE_MIGRATION")
_POSITIVE_INTS = (
    "BATCH_MIN_IMAGES",
    "MANIFEST_MAX_IMAGES",
    "JOB_RECORD_TTL_DAYS",
    "GUEST_TTL_DAYS",
    "BEDROCK_CONNECT_TIMEOUT_SEC",
    "BEDROCK_READ_TIMEOUT_SEC",
    "BEDROCK_MAX_ATTEMPTS",
)
_FAILURE_POLICIES = {"skip", "abort"}


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _validate_redis_url(value: str | None, key: str, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append(f"{key} is required")
        return
    if not (value.startswith("redis://") or value.startswith("rediss://")):
        errors.append(f"{key} must start with redis:// or rediss://")


def _validate_bool_flag_env(key: str, errors: List[str]) -> None:
    raw = os.getenv(key)
    if raw is None:
        return
    if str(raw).strip().lower() not in _BOOL_VALUES:
        errors.append(f"{key} must be one of {sorted(_BOOL_VALUES)}")


def _validate_positive_int_env(key: str, errors: List[str]) -> None:
    raw = os.getenv(key)
    if _is_blank(raw):
        return
    try:
        value = int(str(raw).strip())
    except ValueError:
        errors.append(f"{key} must be an integer")
        return
    if value <= 0:
        errors.append(f"{key} must be greater than zero")


def _validate_failure_policy(value: str | None, errors: List[str]) -> None:
    if _is_blank(value):
        return
    if str(value).strip().lower() not in _FAILURE_POLICIES:
        errors.append(f"MANIFEST_FAILURE_POLICY must be one of {sorted(_FAILURE_POLICIES)}")


def validate_startup_env() -> None:
    errors: List[str] = []
    warnings: List[str] = []

    for key in ("BUCKET_NAME", "BEDROCK_ROLE_ARN"):
        if _is_blank(os.getenv(key)):
            errors.append(f"{key} is required")

    _validate_redis_url(os.getenv("REDIS_URL"), "REDIS_URL", errors)
    _validate_failure_policy(os.getenv("MANIFEST_FAILURE_POLICY"), errors)
    for key in _BOOL_FLAGS:
        _validate_bool_flag_env(key, errors)
    for key in _POSITIVE_INTS:
        _validate_positive_int_env(key, errors)

    if _is_blank(os.getenv("AWS_REGION")):
        warnings.append("AWS_REGION is not set; falling back to us-west-2")
    if _is_blank(os.getenv("API_BASE_URL")):
        warnings.append("API_BASE_URL is not set; status URLs will point at localhost")

    if errors:
        for err in errors:
            logger.error("startup_env_invalid %s", err)
        raise RuntimeError("Startup env validation failed: " + "; ".join(errors))

    for warning in warnings:
        logger.warning("startup_env_warning %s", warning)

    logger.info(
        "startup_env_validated keys=%s",
        ["REDIS_URL", "BUCKET_NAME", "BEDROCK_ROLE_ARN", "AWS_REGION", "API_BASE_URL"],
    )
