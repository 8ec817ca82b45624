"""Care-circle membership model.

Links a member account to a primary account with per-member permissions.
A membership starts as a pending invite carrying a one-time code and
becomes active when a member redeems the code.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from linkloop.models.base import Base, TimestampMixin, UTCDateTime, str_enum


class MembershipStatus(str, enum.Enum):
    """Lifecycle of a circle membership."""

    PENDING = "pending"  # Invite issued, code not yet redeemed
    ACTIVE = "active"
    PAUSED = "paused"  # Owner-paused; member keeps roster visibility only


class CircleMembership(Base, TimestampMixin):
    """A member's seat in a primary account's care circle.

    member_id is unique: a member account belongs to at most one circle.
    """

    __tablename__ = "circle_memberships"

    __table_args__ = (
        CheckConstraint(
            "member_id IS NULL OR member_id != owner_id", name="ck_no_self_membership"
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

    member_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )

    # Cleared once redeemed
    invite_code: Mapped[str | None] = mapped_column(
        String(8),
        nullable=True,
        unique=True,
    )

    status: Mapped[MembershipStatus] = mapped_column(
        str_enum(MembershipStatus, "membershipstatus"),
        nullable=False,
        default=MembershipStatus.PENDING,
    )

    # Permission flags
    view_glucose: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    receive_low_alerts: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    receive_high_alerts: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    joined_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    member = relationship("Account", foreign_keys=[member_id], lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<CircleMembership(owner={self.owner_id}, member={self.member_id}, "
            f"status={self.status.value})>"
        )
