"""Account settings router: alert thresholds and notification preferences."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.auth import CurrentAccount, PrimaryAccount
from linkloop.database import get_db
from linkloop.schemas.settings import (
    AlertSettingsResponse,
    AlertSettingsUpdate,
    NotificationPreferencesResponse,
    NotificationPreferencesUpdate,
)
from linkloop.services import account_settings

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/alerts", response_model=AlertSettingsResponse)
async def get_alert_settings(account: PrimaryAccount) -> AlertSettingsResponse:
    return AlertSettingsResponse.model_validate(account)


@router.patch("/alerts", response_model=AlertSettingsResponse)
async def update_alert_settings(
    body: AlertSettingsUpdate,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> AlertSettingsResponse:
    """Change thresholds. Takes effect from the next evaluated reading."""
    account = await account_settings.update_alert_settings(
        db,
        account,
        low_threshold=body.low_threshold,
        high_threshold=body.high_threshold,
        high_alert_delay_minutes=body.high_alert_delay_minutes,
    )
    return AlertSettingsResponse.model_validate(account)


@router.get("/notifications", response_model=NotificationPreferencesResponse)
async def get_notification_preferences(
    account: CurrentAccount,
) -> NotificationPreferencesResponse:
    return NotificationPreferencesResponse.model_validate(account)


@router.patch("/notifications", response_model=NotificationPreferencesResponse)
async def update_notification_preferences(
    body: NotificationPreferencesUpdate,
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> NotificationPreferencesResponse:
    updates = body.model_dump(exclude_unset=True)
    paused = updates.pop("paused", None)
    account = await account_settings.update_notification_preferences(
        db, account, paused=paused, **updates
    )
    return NotificationPreferencesResponse.model_validate(account)
