"""CGM feed connection model.

Each primary account has at most one connection per feed type. The
credential (Share) or token bundle (OAuth) is stored Fernet-encrypted.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from linkloop.models.base import Base, TimestampMixin, UTCDateTime, str_enum
from linkloop.models.glucose import ReadingSource


class CGMConnectionType(str, enum.Enum):
    """Supported feed types."""

    OAUTH = "oauth"  # Dexcom developer API, token based
    SHARE = "share"  # Dexcom Share, session credential based


class ShareRegion(str, enum.Enum):
    US = "us"
    OUS = "ous"  # Outside the US


CONNECTION_SOURCE = {
    CGMConnectionType.OAUTH: ReadingSource.DEXCOM_OAUTH,
    CGMConnectionType.SHARE: ReadingSource.DEXCOM_SHARE,
}


class CGMConnection(Base, TimestampMixin):
    """Connection and sync state for one feed of one primary account."""

    __tablename__ = "cgm_connections"

    __table_args__ = (
        UniqueConstraint("owner_id", "connection_type", name="uq_owner_connection_type"),
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

    connection_type: Mapped[CGMConnectionType] = mapped_column(
        str_enum(CGMConnectionType, "cgmconnectiontype"),
        nullable=False,
    )

    # Encrypted JSON: OAuth token bundle or Share username/password
    encrypted_payload: Mapped[str] = mapped_column(Text, nullable=False)

    # Share only
    region: Mapped[ShareRegion | None] = mapped_column(
        str_enum(ShareRegion, "shareregion"),
        nullable=True,
    )

    connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Most recent successful connect; staleness is measured from here when
    # no reading has arrived since
    connected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # OAuth access token expiry
    token_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def source(self) -> ReadingSource:
        return CONNECTION_SOURCE[self.connection_type]

    def __repr__(self) -> str:
        return (
            f"<CGMConnection(owner_id={self.owner_id}, "
            f"type={self.connection_type.value}, connected={self.connected})>"
        )
