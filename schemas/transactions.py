from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from schemas.job_contract import TRANSACTION_CATEGORIES, TRANSACTION_TYPES


class OcrResult(BaseModel):
    """Structured receipt fields the model returns inside ``output.text``.

    Lenient on the soft fields (type, category, description) so a slightly
    off-contract answer still yields a transaction; ``amount`` has to be a
    real number or the record is treated as not understood.
    """

    amount: float
    type: str = "expense"
    date: str = ""
    merchant: str = ""
    category: str = "other"
    description: str = ""
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_is_number(cls, v: Any) -> Any:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("amount must be a number")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def _type_or_expense(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in TRANSACTION_TYPES else "expense"

    @field_validator("category", mode="before")
    @classmethod
    def _category_or_other(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in TRANSACTION_CATEGORIES else "other"

    @field_validator("date", "merchant", "description", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_or_none(cls, v: Any) -> Optional[float]:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return v if 0.0 <= float(v) <= 1.0 else None


class BatchOutputLine(BaseModel):
    """One record of the batch output. Only ``customData`` is mandatory: a
    record without usable ``output.text`` still identifies its image."""

    custom_data: str = Field(..., alias="customData", min_length=1)
    output_text: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "BatchOutputLine":
        if not isinstance(raw, dict):
            raw = {}
        output = raw.get("output")
        text = output.get("text") if isinstance(output, dict) else None
        return cls.model_validate(
            {"customData": raw.get("customData"), "output_text": text if isinstance(text, str) else None}
        )
