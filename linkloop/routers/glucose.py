"""Glucose readings router.

Primary accounts log manual readings; the owner and circle members with
view_glucose read the timeline and statistics.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.auth import CurrentAccount
from linkloop.core.errors import NotFound
from linkloop.database import get_db
from linkloop.middleware.rate_limit import limiter
from linkloop.models.account import Account
from linkloop.schemas.glucose import (
    GlucoseHistoryResponse,
    GlucoseReadingResponse,
    GlucoseStatsResponse,
    ManualReadingRequest,
)
from linkloop.services import (
    alert_pipeline,
    alert_state_machine,
    circle,
    glucose_timeline,
)

router = APIRouter(prefix="/api/glucose", tags=["glucose"])


@router.post(
    "/readings",
    response_model=GlucoseReadingResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("60/minute")
async def submit_reading(
    request: Request,
    body: ManualReadingRequest,
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> GlucoseReadingResponse:
    """Log a manual reading and run it through alert evaluation."""
    reading = await alert_pipeline.submit_manual_reading(
        db, account, body.value, trend=body.trend, notes=body.notes
    )
    return GlucoseReadingResponse.model_validate(reading)


@router.get("/readings", response_model=GlucoseHistoryResponse)
async def list_readings(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
    hours: int = Query(default=24, ge=1, le=720, description="Window in hours"),
    limit: int = Query(default=288, ge=1, le=2000),
) -> GlucoseHistoryResponse:
    """The newest `limit` readings of the trailing window, oldest first."""
    owner_id = await circle.resolve_owner_scope(db, account, require_view_glucose=True)
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    readings = await glucose_timeline.get_readings(db, owner_id, since, limit=limit)
    return GlucoseHistoryResponse(
        readings=[GlucoseReadingResponse.model_validate(r) for r in readings],
        count=len(readings),
    )


@router.get("/latest", response_model=GlucoseReadingResponse)
async def latest_reading(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> GlucoseReadingResponse:
    owner_id = await circle.resolve_owner_scope(db, account, require_view_glucose=True)
    reading = await glucose_timeline.get_latest_reading(db, owner_id)
    if reading is None:
        raise NotFound("No glucose readings yet")
    return GlucoseReadingResponse.model_validate(reading)


@router.get("/stats", response_model=GlucoseStatsResponse)
async def reading_stats(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
    hours: int = Query(default=24, ge=1, le=720),
) -> GlucoseStatsResponse:
    """Average, range and time in range against the owner's thresholds."""
    owner_id = await circle.resolve_owner_scope(db, account, require_view_glucose=True)
    owner = account if owner_id == account.id else await db.get(Account, owner_id)
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    stats = await glucose_timeline.get_glucose_stats(
        db, owner_id, since, low=owner.low_threshold, high=owner.high_threshold
    )
    alert_counts = await alert_state_machine.count_alerts_by_family(db, owner_id, since)
    return GlucoseStatsResponse(
        hours=hours,
        count=stats.count,
        average=stats.average,
        minimum=stats.minimum,
        maximum=stats.maximum,
        time_in_range_percent=stats.time_in_range_percent,
        low_count=stats.low_count,
        high_count=stats.high_count,
        low_threshold=owner.low_threshold,
        high_threshold=owner.high_threshold,
        alert_counts=alert_counts,
    )
