"""Alert and acknowledgment models.

An alert is a notifiable glucose event for a primary account. Alerts are
never deleted; status only moves forward (active -> acknowledged ->
resolved, or active -> resolved).
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from linkloop.models.base import Base, UTCDateTime, str_enum, utcnow

DEFAULT_ACK_MESSAGE = "Got it, handling it!"
MAX_ACK_MESSAGE_LENGTH = 200


class AlertType(str, enum.Enum):
    """Rule that produced the alert."""

    LOW = "low"
    URGENT_LOW = "urgent_low"
    HIGH = "high"
    URGENT_HIGH = "urgent_high"
    RAPID_DROP = "rapid_drop"
    RAPID_RISE = "rapid_rise"
    NO_DATA = "no_data"


class AlertSeverity(str, enum.Enum):
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertFamily(str, enum.Enum):
    """De-duplication key: at most one open alert per family per owner."""

    LOW = "low"
    HIGH = "high"
    RAPID_DROP = "rapid_drop"
    RAPID_RISE = "rapid_rise"
    NO_DATA = "no_data"


ALERT_FAMILY = {
    AlertType.LOW: AlertFamily.LOW,
    AlertType.URGENT_LOW: AlertFamily.LOW,
    AlertType.HIGH: AlertFamily.HIGH,
    AlertType.URGENT_HIGH: AlertFamily.HIGH,
    AlertType.RAPID_DROP: AlertFamily.RAPID_DROP,
    AlertType.RAPID_RISE: AlertFamily.RAPID_RISE,
    AlertType.NO_DATA: AlertFamily.NO_DATA,
}

SEVERITY_RANK = {
    AlertSeverity.WARNING: 1,
    AlertSeverity.URGENT: 2,
    AlertSeverity.CRITICAL: 3,
}

OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class Alert(Base):
    """A glucose alert and its lifecycle state."""

    __tablename__ = "alerts"

    __table_args__ = (
        Index("ix_alerts_owner_created", "owner_id", "created_at"),
        # One open alert per (owner, family)
        Index(
            "uq_alerts_open_family",
            "owner_id",
            "family",
            unique=True,
            postgresql_where=text("status <> 'resolved'"),
            sqlite_where=text("status <> 'resolved'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    alert_type: Mapped[AlertType] = mapped_column(
        str_enum(AlertType, "alerttype"),
        nullable=False,
    )

    family: Mapped[AlertFamily] = mapped_column(
        str_enum(AlertFamily, "alertfamily"),
        nullable=False,
    )

    severity: Mapped[AlertSeverity] = mapped_column(
        str_enum(AlertSeverity, "alertseverity"),
        nullable=False,
    )

    # Glucose value that triggered (or last escalated) the alert; null for no_data
    glucose_value: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[AlertStatus] = mapped_column(
        str_enum(AlertStatus, "alertstatus"),
        nullable=False,
        default=AlertStatus.ACTIVE,
    )

    title: Mapped[str] = mapped_column(String(120), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    # Set once glucose is back in range while the alert is still open
    recovered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Null when the system superseded the alert
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
    )

    acknowledgments: Mapped[list["AlertAcknowledgment"]] = relationship(
        back_populates="alert",
        order_by="AlertAcknowledgment.acknowledged_at",
        lazy="selectin",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Alert(type={self.alert_type.value}, "
            f"severity={self.severity.value}, "
            f"status={self.status.value}, "
            f"value={self.glucose_value})>"
        )


class AlertAcknowledgment(Base):
    """A care-circle member's response to an alert. Append-only."""

    __tablename__ = "alert_acknowledgments"

    __table_args__ = (
        UniqueConstraint("alert_id", "user_id", name="uq_alert_acknowledgment_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("alerts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Name snapshot at acknowledgment time
    user_name: Mapped[str] = mapped_column(String(100), nullable=False)

    message: Mapped[str] = mapped_column(
        String(MAX_ACK_MESSAGE_LENGTH),
        nullable=False,
        default=DEFAULT_ACK_MESSAGE,
    )

    acknowledged_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    alert: Mapped[Alert] = relationship(back_populates="acknowledgments")

    def __repr__(self) -> str:
        return f"<AlertAcknowledgment(alert_id={self.alert_id}, user_id={self.user_id})>"
