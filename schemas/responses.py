from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BatchSubmitResponse(BaseModel):
    # Serialized with camelCase aliases for the desktop client.
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    status_url: str = Field(..., alias="statusUrl")
    cached: bool
    estimated_duration: int = Field(..., alias="estimatedDuration", ge=0)
    image_count: int = Field(..., alias="imageCount", ge=0)
    status: str


class BatchJobStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    intent_id: str = Field(..., alias="intentId")
    user_id: str = Field(..., alias="userId")
    status: str
    model_id: Optional[str] = Field(default=None, alias="modelId")
    pending_image_count: int = Field(default=0, alias="pendingImageCount", ge=0)
    submit_time: Optional[str] = Field(default=None, alias="submitTime")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    success_count: Optional[int] = Field(default=None, alias="successCount", ge=0)
    failure_count: Optional[int] = Field(default=None, alias="failureCount", ge=0)
    total_count: Optional[int] = Field(default=None, alias="totalCount", ge=0)
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    ttl: Optional[int] = None


class ReconcileSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    intent_id: Optional[str] = Field(default=None, alias="intentId")
    total_lines: int = Field(default=0, alias="totalLines", ge=0)
    parse_errors: int = Field(default=0, alias="parseErrors", ge=0)
    success_count: int = Field(default=0, alias="successCount", ge=0)
    failure_count: int = Field(default=0, alias="failureCount", ge=0)
    migrated_count: int = Field(default=0, alias="migratedCount", ge=0)
    owner_missing: bool = Field(default=False, alias="ownerMissing")
