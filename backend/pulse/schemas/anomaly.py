from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from pulse.core.clock import as_utc


class AnomalyResponse(BaseModel):
    """Schema for anomaly response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: str
    metric_type: str
    expected_value: float
    actual_value: float
    severity: str
    detected_at: datetime
    updated_at: datetime | None = None
    is_resolved: bool
    resolved_at: datetime | None = None

    @field_validator("detected_at", "updated_at", "resolved_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return as_utc(v) if v is not None else None


class AnomalyListResponse(BaseModel):
    data: list[AnomalyResponse]
    total: int
