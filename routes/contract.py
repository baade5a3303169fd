# User value: This file publishes batch limits and statuses so clients and the admin panel stay in step.
from fastapi import APIRouter

import config
from schemas.job_contract import (
    CONTRACT_VERSION,
    JOB_RECORD_FIELDS,
    JOB_STATUSES,
    TERMINAL_STATUSES,
    TRANSACTION_CATEGORIES,
)
from services.feature_flags import (
    is_orphan_job_stop_enabled,
    is_processed_image_migration_enabled,
)

router = APIRouter()


@router.get("/contract/batch-job")
# Lets the desktop client and admin panel agree on statuses and limits.
def batch_job_contract():
    return {
        "contract_version": CONTRACT_VERSION,
        "job_statuses": list(JOB_STATUSES),
        "terminal_statuses": list(TERMINAL_STATUSES),
        "job_record_fields": list(JOB_RECORD_FIELDS),
        "transaction_categories": list(TRANSACTION_CATEGORIES),
        "limits": {
            "min_images": config.BATCH_MIN_IMAGES,
            "max_images": config.MANIFEST_MAX_IMAGES,
            "manifest_failure_policy": config.MANIFEST_FAILURE_POLICY,
            "job_record_ttl_days": config.JOB_RECORD_TTL_DAYS,
        },
        "capabilities": {
            "orphan_job_stop_enabled": is_orphan_job_stop_enabled(),
            "processed_image_migration_enabled": is_processed_image_migration_enabled(),
        },
    }
