"""Alerts router.

Alert history, the active list, acknowledgment by the owner or any active
circle member, and resolution by the owner.
"""

import uuid

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.auth import CurrentAccount
from linkloop.core.errors import NotFound
from linkloop.database import get_db
from linkloop.middleware.rate_limit import limiter
from linkloop.models.alert import OPEN_STATUSES, AlertStatus
from linkloop.schemas.alert import AcknowledgeRequest, AlertListResponse, AlertResponse
from linkloop.services import alert_state_machine, circle

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


def _list_response(alerts) -> AlertListResponse:
    return AlertListResponse(
        alerts=[AlertResponse.model_validate(a) for a in alerts],
        count=len(alerts),
    )


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
    status: list[AlertStatus] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
) -> AlertListResponse:
    """Alert history for the caller's circle, newest first."""
    owner_id = await circle.resolve_owner_scope(db, account)
    alerts = await alert_state_machine.list_alerts(
        db, owner_id, statuses=status, limit=limit
    )
    return _list_response(alerts)


@router.get("/active", response_model=AlertListResponse)
async def list_active_alerts(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> AlertListResponse:
    """Active and acknowledged alerts (at most one per family)."""
    owner_id = await circle.resolve_owner_scope(db, account)
    alerts = await alert_state_machine.list_alerts(db, owner_id, statuses=OPEN_STATUSES)
    return _list_response(alerts)


@router.get("/{alert_id}", response_model=AlertResponse)
async def get_alert(
    alert_id: uuid.UUID,
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    owner_id = await circle.resolve_owner_scope(db, account)
    alert = await alert_state_machine.get_alert(db, alert_id)
    if alert.owner_id != owner_id:
        raise NotFound("Alert not found", alert_id=str(alert_id))
    return AlertResponse.model_validate(alert)


@router.post("/{alert_id}/acknowledge", response_model=AlertResponse)
@limiter.limit("60/minute")
async def acknowledge(
    request: Request,
    alert_id: uuid.UUID,
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
    body: AcknowledgeRequest | None = Body(default=None),
) -> AlertResponse:
    """Acknowledge an alert. Each person can acknowledge once."""
    alert = await alert_state_machine.acknowledge_alert(
        db, alert_id, account, message=body.message if body else None
    )
    return AlertResponse.model_validate(alert)


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
@limiter.limit("60/minute")
async def resolve(
    request: Request,
    alert_id: uuid.UUID,
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    """Resolve an alert. Owner only."""
    alert = await alert_state_machine.resolve_alert(db, alert_id, account)
    return AlertResponse.model_validate(alert)
