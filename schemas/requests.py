from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

import config


class BatchSubmitRequest(BaseModel):
    # Field names follow the client wire format (camelCase).
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent_id: str = Field(..., alias="intentId", min_length=1)
    pending_image_ids: List[str] = Field(..., alias="pendingImageIds")
    model_id: str = Field(default_factory=lambda: config.DEFAULT_MODEL_ID, alias="modelId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)

    @field_validator("intent_id", "user_id", "model_id")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("pending_image_ids")
    @classmethod
    def _dedupe_images(cls, v: List[str]) -> List[str]:
        seen = set()
        ordered = []
        for item in v:
            image_id = str(item).strip()
            if image_id and image_id not in seen:
                seen.add(image_id)
                ordered.append(image_id)
        if len(ordered) < config.BATCH_MIN_IMAGES:
            raise ValueError(f"Must have at least {config.BATCH_MIN_IMAGES} images")
        return ordered


class JobStatusChangeRequest(BaseModel):
    status: str = Field(..., min_length=1)
    error_message: Optional[str] = None


class ReconcileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    output_uri: str = Field(..., alias="outputUri", min_length=6)
