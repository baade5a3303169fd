"""
Batch pipeline errors.

Each error carries the HTTP status and error code it maps to, and whether a
caller may retry the same request (same intentId) safely.
"""

from typing import Optional


class BatchPipelineError(Exception):
    """Base exception for batch pipeline errors."""

    status_code = 500
    error_code = "BATCH_PIPELINE_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict:
        detail = {"error_code": self.error_code, "error_message": self.message, "retryable": self.retryable}
        if self.details:
            detail["details"] = self.details
        return detail


class RequestValidationFailed(BatchPipelineError):
    status_code = 400
    error_code = "INVALID_REQUEST"


class IdempotencyStoreUnavailable(BatchPipelineError):
    """The intent lookup could not be verified; submitting anyway could duplicate a job."""

    status_code = 503
    error_code = "IDEMPOTENCY_STORE_UNAVAILABLE"
    retryable = True


class StorageUnavailable(BatchPipelineError):
    status_code = 503
    error_code = "STORAGE_UNAVAILABLE"
    retryable = True


class ManifestBuildFailed(BatchPipelineError):
    status_code = 422
    error_code = "MANIFEST_BUILD_FAILED"


class BatchSubmissionFailed(BatchPipelineError):
    """Bedrock refused or never answered. No Job Record exists yet, so a retry is safe."""

    status_code = 502
    error_code = "BATCH_SUBMISSION_FAILED"
    retryable = True

    def __init__(self, message: str, details: Optional[dict] = None, throttled: bool = False):
        super().__init__(message, details)
        self.throttled = throttled
        if throttled:
            self.status_code = 429
            self.error_code = "BATCH_SUBMISSION_THROTTLED"


class JobRecordWriteFailed(BatchPipelineError):
    status_code = 503
    error_code = "JOB_RECORD_WRITE_FAILED"
    retryable = True


class JobNotFound(BatchPipelineError):
    status_code = 404
    error_code = "JOB_NOT_FOUND"


class InvalidStatusTransition(BatchPipelineError):
    status_code = 409
    error_code = "STATE_CONFLICT"


class BatchServiceUnavailable(BatchPipelineError):
    status_code = 503
    error_code = "BATCH_SERVICE_UNAVAILABLE"
    retryable = True
