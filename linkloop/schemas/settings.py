"""Alert settings and notification preference schemas."""

from pydantic import BaseModel, Field


class AlertSettingsResponse(BaseModel):
    model_config = {"from_attributes": True}

    low_threshold: int = Field(..., description="Low threshold in mg/dL")
    high_threshold: int = Field(..., description="High threshold in mg/dL")
    high_alert_delay_minutes: int = Field(
        ..., description="Minutes above high before a high alert fires"
    )


class AlertSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their current value.

    Ranges are checked against the merged result so the cross-field rule
    (low below high) holds.
    """

    low_threshold: int | None = None
    high_threshold: int | None = None
    high_alert_delay_minutes: int | None = None


class NotificationPreferencesResponse(BaseModel):
    model_config = {"from_attributes": True}

    paused: bool
    notify_glucose_alerts: bool
    notify_acknowledgments: bool
    notify_alert_resolved: bool
    notify_daily_summary: bool


class NotificationPreferencesUpdate(BaseModel):
    paused: bool | None = Field(
        default=None, description="Members only: stop every notification"
    )
    notify_glucose_alerts: bool | None = None
    notify_acknowledgments: bool | None = None
    notify_alert_resolved: bool | None = None
    notify_daily_summary: bool | None = None
