# User value: one shared status vocabulary keeps submit, status and reconcile consistent for users.
CONTRACT_VERSION = "2026-01-batch-ocr-v1"

JOB_STATUS_SUBMITTED = "SUBMITTED"
JOB_STATUS_RUNNING = "RUNNING"
JOB_STATUS_COMPLETED = "COMPLETED"
JOB_STATUS_FAILED = "FAILED"

JOB_STATUSES = (
    JOB_STATUS_SUBMITTED,
    JOB_STATUS_RUNNING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)

# Bedrock ModelInvocationJob statuses folded onto the job lifecycle.
BEDROCK_STATUS_MAP = {
    "SUBMITTED": JOB_STATUS_SUBMITTED,
    "VALIDATING": JOB_STATUS_SUBMITTED,
    "SCHEDULED": JOB_STATUS_SUBMITTED,
    "INPROGRESS": JOB_STATUS_RUNNING,
    "STOPPING": JOB_STATUS_RUNNING,
    "COMPLETED": JOB_STATUS_COMPLETED,
    "PARTIALLYCOMPLETED": JOB_STATUS_COMPLETED,
    "FAILED": JOB_STATUS_FAILED,
    "STOPPED": JOB_STATUS_FAILED,
    "EXPIRED": JOB_STATUS_FAILED,
}

JOB_RECORD_FIELDS = (
    "intent_id",
    "job_id",
    "job_arn",
    "user_id",
    "status",
    "model_id",
    "manifest_uri",
    "output_uri",
    "pending_image_count",
    "submit_time",
    "updated_at",
    "ttl",
    "completed_at",
    "success_count",
    "failure_count",
    "total_count",
    "error_message",
)

TRANSACTION_STATUS_UNCONFIRMED = "unconfirmed"
TRANSACTION_STATUS_FAILED = "failed"

TRANSACTION_CATEGORIES = ("sale", "purchase", "shipping", "packaging", "fee", "other")
TRANSACTION_TYPES = ("income", "expense")

GUEST_USER_PREFIXES = ("device-", "ephemeral-")

PENDING_IMAGE_STATUS_PENDING = "pending"
PENDING_IMAGE_STATUS_PROCESSED = "processed"
