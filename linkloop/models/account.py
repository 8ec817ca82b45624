"""Account model.

An account is either the primary account whose glucose is tracked or a
care-circle member. Identity lives with the session collaborator; this
table holds the engine-side settings keyed by the verified account id.
"""

import enum
import uuid

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from linkloop.models.base import Base, TimestampMixin, str_enum

DEFAULT_LOW_THRESHOLD = 70
DEFAULT_HIGH_THRESHOLD = 180
DEFAULT_HIGH_ALERT_DELAY_MINUTES = 0
DEFAULT_DISPLAY_NAME = "LinkLoop user"


class AccountRole(str, enum.Enum):
    """Role supplied by the identity collaborator."""

    PRIMARY = "primary"
    MEMBER = "member"


class Account(Base, TimestampMixin):
    """Per-account alert settings, notification preferences and circle link."""

    __tablename__ = "accounts"

    __table_args__ = (
        CheckConstraint(
            "low_threshold >= 40 AND low_threshold < high_threshold "
            "AND high_threshold <= 400",
            name="ck_accounts_thresholds",
        ),
        CheckConstraint(
            "high_alert_delay_minutes >= 0 AND high_alert_delay_minutes <= 120",
            name="ck_accounts_high_delay",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    role: Mapped[AccountRole] = mapped_column(
        str_enum(AccountRole, "accountrole"),
        nullable=False,
    )

    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Alert settings (mg/dL)
    low_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_LOW_THRESHOLD
    )
    high_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_HIGH_THRESHOLD
    )
    high_alert_delay_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_HIGH_ALERT_DELAY_MINUTES
    )

    # Member accounts: the primary account whose circle they joined
    linked_owner_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Member-only: suppresses alert notifications, never alert creation
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Notification preferences per category
    notify_glucose_alerts: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    notify_acknowledgments: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    notify_alert_resolved: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    notify_daily_summary: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    @property
    def is_primary(self) -> bool:
        return self.role == AccountRole.PRIMARY

    @property
    def name(self) -> str:
        return self.display_name or DEFAULT_DISPLAY_NAME

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, role={self.role.value})>"
