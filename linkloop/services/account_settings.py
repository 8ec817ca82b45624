"""Account alert settings and notification preferences.

Thresholds must satisfy 40 <= low < high <= 400 and the high alert
delay 0 <= delay <= 120 minutes. Partial updates are validated against
the merged result so a single field can be changed on its own.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.errors import ValidationError
from linkloop.logging_config import get_logger
from linkloop.models.account import Account

logger = get_logger(__name__)

MIN_LOW_THRESHOLD = 40
MAX_HIGH_THRESHOLD = 400
MIN_HIGH_DELAY = 0
MAX_HIGH_DELAY = 120

PREFERENCE_FIELDS = (
    "notify_glucose_alerts",
    "notify_acknowledgments",
    "notify_alert_resolved",
    "notify_daily_summary",
)


def validate_thresholds(low: int, high: int, delay: int) -> None:
    """Raise ValidationError unless the combination is allowed."""
    if low < MIN_LOW_THRESHOLD:
        raise ValidationError(
            f"Low threshold must be at least {MIN_LOW_THRESHOLD} mg/dL"
        )
    if high > MAX_HIGH_THRESHOLD:
        raise ValidationError(
            f"High threshold must be at most {MAX_HIGH_THRESHOLD} mg/dL"
        )
    if low >= high:
        raise ValidationError("Low threshold must be below high threshold")
    if not MIN_HIGH_DELAY <= delay <= MAX_HIGH_DELAY:
        raise ValidationError(
            f"High alert delay must be between {MIN_HIGH_DELAY} and "
            f"{MAX_HIGH_DELAY} minutes"
        )


async def update_alert_settings(
    db: AsyncSession,
    account: Account,
    low_threshold: int | None = None,
    high_threshold: int | None = None,
    high_alert_delay_minutes: int | None = None,
) -> Account:
    """Apply a partial threshold update.

    Raises:
        ValidationError: If the resulting settings are out of range
    """
    low = low_threshold if low_threshold is not None else account.low_threshold
    high = high_threshold if high_threshold is not None else account.high_threshold
    delay = (
        high_alert_delay_minutes
        if high_alert_delay_minutes is not None
        else account.high_alert_delay_minutes
    )
    validate_thresholds(low, high, delay)

    account.low_threshold = low
    account.high_threshold = high
    account.high_alert_delay_minutes = delay
    await db.commit()
    await db.refresh(account)

    logger.info(
        "Alert settings updated",
        account_id=str(account.id),
        low_threshold=low,
        high_threshold=high,
        high_alert_delay_minutes=delay,
    )
    return account


async def update_notification_preferences(
    db: AsyncSession,
    account: Account,
    paused: bool | None = None,
    **preferences: bool | None,
) -> Account:
    """Update per-category preferences and, for members, the pause flag.

    Raises:
        ValidationError: If a primary account tries to pause or a field is unknown
    """
    unknown = set(preferences) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown preference(s): {', '.join(sorted(unknown))}")

    if paused is not None:
        if account.is_primary:
            raise ValidationError("Only care-circle members can pause notifications")
        account.paused = paused

    for name, value in preferences.items():
        if value is not None:
            setattr(account, name, value)

    await db.commit()
    await db.refresh(account)

    logger.info(
        "Notification preferences updated",
        account_id=str(account.id),
        paused=account.paused,
    )
    return account
