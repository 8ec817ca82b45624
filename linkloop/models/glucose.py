"""Glucose reading model.

Readings are immutable once stored; corrections are new readings.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from linkloop.models.base import Base, UTCDateTime, str_enum, utcnow


class GlucoseTrend(str, enum.Enum):
    """Glucose trend direction."""

    RISING_FAST = "rising_fast"
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"
    FALLING_FAST = "falling_fast"


class ReadingSource(str, enum.Enum):
    """Where a reading came from."""

    MANUAL = "manual"
    DEXCOM_OAUTH = "dexcom_oauth"
    DEXCOM_SHARE = "dexcom_share"


# Dexcom trend names (API v3 and Share) to our coarser trend scale
DEXCOM_TREND_MAP = {
    "doubleUp": GlucoseTrend.RISING_FAST,
    "singleUp": GlucoseTrend.RISING,
    "fortyFiveUp": GlucoseTrend.RISING,
    "flat": GlucoseTrend.STABLE,
    "fortyFiveDown": GlucoseTrend.FALLING,
    "singleDown": GlucoseTrend.FALLING,
    "doubleDown": GlucoseTrend.FALLING_FAST,
    # Share reports the trend as a number as well
    1: GlucoseTrend.RISING_FAST,
    2: GlucoseTrend.RISING,
    3: GlucoseTrend.RISING,
    4: GlucoseTrend.STABLE,
    5: GlucoseTrend.FALLING,
    6: GlucoseTrend.FALLING,
    7: GlucoseTrend.FALLING_FAST,
}

FEED_SOURCES = (ReadingSource.DEXCOM_OAUTH, ReadingSource.DEXCOM_SHARE)


def map_dexcom_trend(trend: str | int | None) -> GlucoseTrend:
    """Map a Dexcom trend value to GlucoseTrend; unknown values are stable."""
    return DEXCOM_TREND_MAP.get(trend, GlucoseTrend.STABLE)


class GlucoseReading(Base):
    """A single glucose value for a primary account."""

    __tablename__ = "glucose_readings"

    __table_args__ = (
        Index("ix_glucose_readings_owner_timestamp", "owner_id", "reading_timestamp"),
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

    # Glucose value in mg/dL
    value: Mapped[int] = mapped_column(Integer, nullable=False)

    trend: Mapped[GlucoseTrend] = mapped_column(
        str_enum(GlucoseTrend, "glucosetrend"),
        nullable=False,
        default=GlucoseTrend.STABLE,
    )

    source: Mapped[ReadingSource] = mapped_column(
        str_enum(ReadingSource, "readingsource"),
        nullable=False,
    )

    # When the reading was taken
    reading_timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # When we stored this reading
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<GlucoseReading(owner_id={self.owner_id}, value={self.value}, "
            f"source={self.source.value}, timestamp={self.reading_timestamp})>"
        )
