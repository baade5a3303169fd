import os


def _flag(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "1" if default else "0")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


FEATURE_ORPHAN_JOB_STOP = _flag("FEATURE_ORPHAN_JOB_STOP", True)
FEATURE_PROCESSED_IMAGE_MIGRATION = _flag("FEATURE_PROCESSED_IMAGE_MIGRATION", True)


# User value: a lost submission race never leaves a second paid job running.
def is_orphan_job_stop_enabled() -> bool:
    return FEATURE_ORPHAN_JOB_STOP


# User value: reconciled receipts leave the upload area so they are never processed twice.
def is_processed_image_migration_enabled() -> bool:
    return FEATURE_PROCESSED_IMAGE_MIGRATION
