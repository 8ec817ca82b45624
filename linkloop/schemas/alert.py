"""Alert and acknowledgment schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from linkloop.models.alert import AlertFamily, AlertSeverity, AlertStatus, AlertType


class AcknowledgmentResponse(BaseModel):
    """One entry in an alert's acknowledgment ledger."""

    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    user_name: str
    message: str
    acknowledged_at: datetime


class AlertResponse(BaseModel):
    """Single alert with its acknowledgments, oldest first."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: uuid.UUID
    alert_type: AlertType
    family: AlertFamily
    severity: AlertSeverity
    status: AlertStatus
    glucose_value: int | None
    title: str
    message: str
    created_at: datetime
    recovered_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: uuid.UUID | None = None
    acknowledgments: list[AcknowledgmentResponse] = []


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    count: int


class AcknowledgeRequest(BaseModel):
    """Optional short message; a default is used when omitted or blank."""

    message: str | None = Field(
        default=None, description="Up to 200 characters shown to the circle"
    )
