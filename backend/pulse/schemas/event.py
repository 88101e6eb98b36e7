from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulse.core.clock import as_utc


class EventIn(BaseModel):
    """Tracking payload posted by the browser snippet.

    Required fields are optional here on purpose: missing values are reported
    by the ingestion boundary with a 400 that names them.
    """

    model_config = ConfigDict(populate_by_name=True)

    project_id: str | None = Field(None, alias="projectId", max_length=64)
    url: str | None = Field(None, max_length=2048)
    referrer: str | None = Field(None, max_length=2048)
    session_id: str | None = Field(None, alias="sessionId", max_length=128)
    event_name: str | None = Field(None, alias="eventName", max_length=255)
    user_agent: str | None = Field(None, alias="userAgent", max_length=1024)


class NewEvent(BaseModel):
    """Validated, enriched event ready for the store."""

    project_id: str
    event_name: str = "pageview"
    url: str
    referrer: str | None = None
    session_id: str
    country: str = "Unknown"
    browser: str = "Unknown"
    os: str = "Unknown"


class EventRecord(NewEvent):
    """Immutable stored event."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class EventAccepted(BaseModel):
    """Schema for event ingestion response."""

    id: int
    timestamp: datetime


class EventFilters(BaseModel):
    """Optional equality filters for raw event queries."""

    event_name: str | None = None
    url: str | None = None
    session_id: str | None = None
    country: str | None = None
    browser: str | None = None
    os: str | None = None

    def active(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class EventPage(BaseModel):
    """One bounded page of raw events."""

    data: list[EventRecord]
    next_cursor: str | None
