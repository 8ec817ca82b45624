"""Glucose reading schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from linkloop.models.alert import AlertFamily
from linkloop.models.glucose import GlucoseTrend, ReadingSource


class ManualReadingRequest(BaseModel):
    """Request schema for logging a reading by hand."""

    value: int = Field(..., description="Glucose value in mg/dL", ge=20, le=600)
    trend: GlucoseTrend = Field(default=GlucoseTrend.STABLE)
    notes: str | None = Field(default=None, max_length=500)


class GlucoseReadingResponse(BaseModel):
    """Response schema for a single glucose reading."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    value: int = Field(..., description="Glucose value in mg/dL")
    trend: GlucoseTrend
    source: ReadingSource = Field(..., description="Manual entry or feed")
    reading_timestamp: datetime = Field(..., description="When the reading was taken")
    received_at: datetime = Field(..., description="When we stored the reading")
    notes: str | None = None


class GlucoseHistoryResponse(BaseModel):
    readings: list[GlucoseReadingResponse]
    count: int = Field(..., description="Number of readings returned")


class GlucoseStatsResponse(BaseModel):
    """Aggregate statistics over a trailing window."""

    model_config = {"from_attributes": True}

    hours: int = Field(..., description="Window length in hours")
    count: int
    average: float | None = None
    minimum: int | None = None
    maximum: int | None = None
    time_in_range_percent: float | None = Field(
        None, description="Share of readings inside the owner's thresholds"
    )
    low_count: int
    high_count: int
    low_threshold: int
    high_threshold: int
    alert_counts: dict[AlertFamily, int] = Field(
        default_factory=dict, description="Alerts opened in the window per family"
    )
