"""Glucose timeline service.

Append-only store of readings per primary account. Feed readings are
merged so that each physical sensor reading is stored once even when both
Dexcom feeds deliver it; manual readings are stored as submitted.
"""

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.cgm.base import FeedReading, is_plausible
from linkloop.config import settings
from linkloop.core.errors import ValidationError
from linkloop.core.locks import locks, timeline_key
from linkloop.logging_config import get_logger
from linkloop.models.glucose import (
    FEED_SOURCES,
    GlucoseReading,
    GlucoseTrend,
    ReadingSource,
)

logger = get_logger(__name__)

MIN_READING_VALUE = 20
MAX_READING_VALUE = 600
MAX_NOTES_LENGTH = 500


@dataclass
class MergeResult:
    """Outcome of merging one batch of feed readings."""

    inserted: list[GlucoseReading] = field(default_factory=list)
    new_readings: list[GlucoseReading] = field(default_factory=list)  # Not replacements
    replaced: int = 0  # Share rows superseded by their OAuth twin
    duplicates: int = 0  # Same reading already stored
    conflicts: int = 0  # Overlapping reading with a different value, dropped
    skipped: int = 0  # Implausible values


@dataclass(frozen=True)
class GlucoseStats:
    """Aggregates over a window of readings."""

    count: int
    average: float | None
    minimum: int | None
    maximum: int | None
    time_in_range_percent: float | None
    low_count: int
    high_count: int


def validate_reading_value(value: int) -> None:
    """Reject values outside the accepted reading range.

    Raises:
        ValidationError: If value is outside [20, 600]
    """
    if not MIN_READING_VALUE <= value <= MAX_READING_VALUE:
        raise ValidationError(
            f"Glucose value must be between {MIN_READING_VALUE} and "
            f"{MAX_READING_VALUE} mg/dL",
            value=value,
        )


async def add_manual_reading(
    db: AsyncSession,
    owner_id: uuid.UUID,
    value: int,
    trend: GlucoseTrend = GlucoseTrend.STABLE,
    notes: str | None = None,
    timestamp: datetime | None = None,
) -> GlucoseReading:
    """Store a manually entered reading.

    Raises:
        ValidationError: If the value or notes are out of range
    """
    validate_reading_value(value)
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes must be at most {MAX_NOTES_LENGTH} characters")

    now = datetime.now(timezone.utc)
    reading = GlucoseReading(
        owner_id=owner_id,
        value=value,
        trend=trend,
        source=ReadingSource.MANUAL,
        reading_timestamp=timestamp or now,
        notes=notes.strip() if notes else None,
        received_at=now,
    )
    db.add(reading)
    await db.commit()
    await db.refresh(reading)

    logger.info(
        "Manual reading stored",
        owner_id=str(owner_id),
        value=value,
        reading_id=str(reading.id),
    )
    return reading


async def merge_feed_readings(
    db: AsyncSession,
    owner_id: uuid.UUID,
    readings: Sequence[FeedReading],
) -> MergeResult:
    """Merge a batch of feed readings into the owner's timeline.

    A stored feed reading less than the merge window away from an incoming
    one is the same physical reading. The OAuth feed wins over Share:
    an OAuth reading replaces an overlapping Share row, and a Share reading
    that overlaps an OAuth row is dropped. Readings from the same source are
    never stored twice. The batch is committed as one transaction.

    Returns:
        MergeResult describing what was stored
    """
    result = MergeResult()
    plausible = []
    for reading in readings:
        if is_plausible(reading.value):
            plausible.append(reading)
        else:
            result.skipped += 1
    if not plausible:
        return result

    plausible.sort(key=lambda r: r.timestamp)
    window = timedelta(seconds=settings.merge_window_seconds)
    tolerance = settings.merge_value_tolerance

    async with locks.hold(timeline_key(owner_id)):
        existing = await db.execute(
            select(GlucoseReading).where(
                GlucoseReading.owner_id == owner_id,
                GlucoseReading.source.in_(FEED_SOURCES),
                GlucoseReading.reading_timestamp > plausible[0].timestamp - window,
                GlucoseReading.reading_timestamp < plausible[-1].timestamp + window,
            )
        )
        working: list[GlucoseReading] = list(existing.scalars().all())
        now = datetime.now(timezone.utc)

        for incoming in plausible:
            overlapping = [
                stored
                for stored in working
                if abs(stored.reading_timestamp - incoming.timestamp) < window
            ]
            replacement = False

            if overlapping:
                nearest = min(
                    overlapping,
                    key=lambda s: abs(s.reading_timestamp - incoming.timestamp),
                )
                same_value = abs(nearest.value - incoming.value) <= tolerance
                already_have_source = any(
                    s.source == incoming.source for s in overlapping
                )

                if (
                    already_have_source
                    or incoming.source != ReadingSource.DEXCOM_OAUTH
                    or nearest.source != ReadingSource.DEXCOM_SHARE
                ):
                    if same_value:
                        result.duplicates += 1
                    else:
                        result.conflicts += 1
                        logger.info(
                            "Feed conflict, keeping stored reading",
                            owner_id=str(owner_id),
                            stored_source=nearest.source.value,
                            stored_value=nearest.value,
                            dropped_source=incoming.source.value,
                            dropped_value=incoming.value,
                        )
                    continue

                # OAuth supersedes the Share row for the same sensor reading
                await db.delete(nearest)
                working.remove(nearest)
                result.replaced += 1
                replacement = True

            reading = GlucoseReading(
                id=uuid.uuid4(),
                owner_id=owner_id,
                value=incoming.value,
                trend=incoming.trend,
                source=incoming.source,
                reading_timestamp=incoming.timestamp,
                received_at=now,
            )
            db.add(reading)
            working.append(reading)
            result.inserted.append(reading)
            if not replacement:
                result.new_readings.append(reading)

        await db.commit()

    if result.inserted or result.conflicts:
        logger.info(
            "Feed readings merged",
            owner_id=str(owner_id),
            inserted=len(result.inserted),
            replaced=result.replaced,
            duplicates=result.duplicates,
            conflicts=result.conflicts,
            skipped=result.skipped,
        )
    return result


async def get_readings(
    db: AsyncSession,
    owner_id: uuid.UUID,
    since: datetime,
    until: datetime | None = None,
    limit: int | None = None,
) -> list[GlucoseReading]:
    """Readings for the owner in [since, until], oldest first.

    With a limit, the newest ``limit`` readings of the window are kept.
    """
    query = select(GlucoseReading).where(
        GlucoseReading.owner_id == owner_id,
        GlucoseReading.reading_timestamp >= since,
    )
    if until is not None:
        query = query.where(GlucoseReading.reading_timestamp <= until)
    if limit is None:
        result = await db.execute(
            query.order_by(GlucoseReading.reading_timestamp.asc())
        )
        return list(result.scalars().all())

    result = await db.execute(
        query.order_by(GlucoseReading.reading_timestamp.desc()).limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def get_latest_reading(
    db: AsyncSession, owner_id: uuid.UUID
) -> GlucoseReading | None:
    """The most recent reading for the owner, if any."""
    result = await db.execute(
        select(GlucoseReading)
        .where(GlucoseReading.owner_id == owner_id)
        .order_by(GlucoseReading.reading_timestamp.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_history_before(
    db: AsyncSession,
    owner_id: uuid.UUID,
    before: datetime,
    minutes: int,
) -> list[GlucoseReading]:
    """Readings in the ``minutes`` preceding ``before`` (exclusive), oldest first."""
    result = await db.execute(
        select(GlucoseReading)
        .where(
            GlucoseReading.owner_id == owner_id,
            GlucoseReading.reading_timestamp >= before - timedelta(minutes=minutes),
            GlucoseReading.reading_timestamp < before,
        )
        .order_by(GlucoseReading.reading_timestamp.asc())
    )
    return list(result.scalars().all())


async def get_glucose_stats(
    db: AsyncSession,
    owner_id: uuid.UUID,
    since: datetime,
    low: int,
    high: int,
) -> GlucoseStats:
    """Aggregate statistics for readings since ``since``.

    Time in range uses the owner's own [low, high] thresholds.
    """
    result = await db.execute(
        select(
            func.count(GlucoseReading.id).label("count"),
            func.avg(GlucoseReading.value).label("average"),
            func.min(GlucoseReading.value).label("minimum"),
            func.max(GlucoseReading.value).label("maximum"),
            func.sum(
                case(
                    (GlucoseReading.value.between(low, high), 1),
                    else_=0,
                )
            ).label("in_range"),
            func.sum(case((GlucoseReading.value < low, 1), else_=0)).label("lows"),
            func.sum(case((GlucoseReading.value > high, 1), else_=0)).label("highs"),
        ).where(
            GlucoseReading.owner_id == owner_id,
            GlucoseReading.reading_timestamp >= since,
        )
    )
    row = result.one()
    count = row.count or 0

    if count == 0:
        return GlucoseStats(
            count=0,
            average=None,
            minimum=None,
            maximum=None,
            time_in_range_percent=None,
            low_count=0,
            high_count=0,
        )

    return GlucoseStats(
        count=count,
        average=round(float(row.average), 1),
        minimum=row.minimum,
        maximum=row.maximum,
        time_in_range_percent=round((row.in_range or 0) / count * 100, 1),
        low_count=row.lows or 0,
        high_count=row.highs or 0,
    )
