"""Alert pipeline.

Runs newly stored readings through the threshold evaluator and turns its
decisions into alert state changes. Also hosts the stale-feed check that
raises no_data alerts for accounts whose connected feeds went quiet.
"""

import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.config import settings
from linkloop.core.errors import DuplicateActive, NotAuthorized
from linkloop.logging_config import get_logger
from linkloop.models.account import Account
from linkloop.models.alert import Alert, AlertFamily, AlertType
from linkloop.models.cgm_connection import CGMConnection
from linkloop.models.glucose import GlucoseReading, GlucoseTrend
from linkloop.services import alert_state_machine, glucose_timeline
from linkloop.services.alert_state_machine import DecisionOutcome
from linkloop.services.threshold_evaluator import (
    RAPID_LOOKBACK_MINUTES,
    AlertDecision,
    ReadingPoint,
    ThresholdSettings,
    classify_rate,
    evaluate_reading,
    evaluate_staleness,
)

logger = get_logger(__name__)


def cleared_families(
    point: ReadingPoint,
    thresholds: ThresholdSettings,
    history: Sequence[ReadingPoint],
) -> list[AlertFamily]:
    """Families whose alerting condition this reading shows has ended."""
    cleared = [AlertFamily.NO_DATA]
    if point.value >= thresholds.low:
        cleared.append(AlertFamily.LOW)
    if point.value <= thresholds.high:
        cleared.append(AlertFamily.HIGH)

    rate = classify_rate(point, history, settings.rapid_change_threshold)
    if rate is None or rate.alert_type != AlertType.RAPID_DROP:
        cleared.append(AlertFamily.RAPID_DROP)
    if rate is None or rate.alert_type != AlertType.RAPID_RISE:
        cleared.append(AlertFamily.RAPID_RISE)
    return cleared


async def evaluate_new_reading(
    db: AsyncSession,
    owner: Account,
    reading: GlucoseReading,
) -> tuple[DecisionOutcome, Alert | None] | None:
    """Evaluate one newly stored reading for its owner.

    Backfilled readings older than the evaluation window are stored but
    never alerted on.

    Returns:
        (outcome, alert) when the evaluator fired, otherwise None
    """
    now = datetime.now(timezone.utc)
    if now - reading.reading_timestamp > timedelta(
        minutes=settings.evaluation_max_age_minutes
    ):
        return None

    thresholds = ThresholdSettings.from_account(owner)
    lookback = (
        max(thresholds.high_delay_minutes, RAPID_LOOKBACK_MINUTES)
        + settings.high_run_gap_minutes
    )
    history_rows = await glucose_timeline.get_history_before(
        db, owner.id, reading.reading_timestamp, lookback
    )
    history = [ReadingPoint.from_reading(r) for r in history_rows]
    point = ReadingPoint.from_reading(reading)

    await alert_state_machine.mark_recovered(
        db, owner.id, cleared_families(point, thresholds, history)
    )

    decision = evaluate_reading(
        point,
        thresholds,
        history,
        rapid_threshold=settings.rapid_change_threshold,
        high_run_gap_minutes=settings.high_run_gap_minutes,
    )
    if decision is None:
        return None

    return await alert_state_machine.apply_decision(
        db, owner, decision, reading=point, history=history
    )


async def process_new_readings(
    db: AsyncSession,
    owner_id: uuid.UUID,
    readings: Sequence[GlucoseReading],
) -> list[tuple[DecisionOutcome, Alert | None]]:
    """Evaluate readings oldest first. Returns the decisions that fired."""
    if not readings:
        return []

    owner = await db.get(Account, owner_id)
    if owner is None:
        return []

    outcomes = []
    for reading in sorted(readings, key=lambda r: r.reading_timestamp):
        try:
            outcome = await evaluate_new_reading(db, owner, reading)
        except DuplicateActive:
            # Another evaluation opened the same family first
            logger.info(
                "Concurrent alert open lost race",
                owner_id=str(owner_id),
                reading_id=str(reading.id),
            )
            continue
        if outcome is not None:
            outcomes.append(outcome)
    return outcomes


async def submit_manual_reading(
    db: AsyncSession,
    account: Account,
    value: int,
    trend: GlucoseTrend = GlucoseTrend.STABLE,
    notes: str | None = None,
) -> GlucoseReading:
    """Store a manual reading for a primary account and evaluate it.

    Raises:
        NotAuthorized: If the account is not a primary account
        ValidationError: If the value is outside 20-600 mg/dL
    """
    if not account.is_primary:
        raise NotAuthorized("Only primary accounts can log readings")

    reading = await glucose_timeline.add_manual_reading(
        db, account.id, value, trend=trend, notes=notes
    )
    await process_new_readings(db, account.id, [reading])
    return reading


async def last_seen_at(db: AsyncSession, owner_id: uuid.UUID) -> datetime | None:
    """Newest reading time, or the newest connect time if that is later.

    None when the owner has no connected feed.
    """
    result = await db.execute(
        select(func.max(CGMConnection.connected_at)).where(
            CGMConnection.owner_id == owner_id,
            CGMConnection.connected.is_(True),
        )
    )
    connected_since = result.scalar_one_or_none()
    if connected_since is None:
        return None
    if connected_since.tzinfo is None:
        connected_since = connected_since.replace(tzinfo=timezone.utc)

    latest = await glucose_timeline.get_latest_reading(db, owner_id)
    if latest is None:
        return connected_since
    return max(latest.reading_timestamp, connected_since)


async def check_stale_feed(
    db: AsyncSession, owner_id: uuid.UUID
) -> tuple[DecisionOutcome, Alert | None] | None:
    """Raise a no_data alert when a connected owner's data went stale."""
    seen = await last_seen_at(db, owner_id)
    decision: AlertDecision | None = evaluate_staleness(
        seen, datetime.now(timezone.utc), settings.stale_data_window_minutes
    )
    if decision is None:
        return None

    owner = await db.get(Account, owner_id)
    if owner is None:
        return None

    logger.info(
        "Feed data is stale",
        owner_id=str(owner_id),
        last_seen_at=seen.isoformat() if seen else None,
    )
    return await alert_state_machine.apply_decision(db, owner, decision)
