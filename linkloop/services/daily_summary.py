"""Daily glucose recap.

Once a day every owner with an active care circle gets a one-line summary
of the last 24 hours (time in range, average, lows and highs), and so do
the members allowed to see their glucose. Owners with no readings in the
window are skipped.
"""

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.logging_config import get_logger
from linkloop.models.account import Account
from linkloop.models.circle import CircleMembership, MembershipStatus
from linkloop.services import glucose_timeline
from linkloop.services.glucose_timeline import GlucoseStats
from linkloop.services.notification_dispatcher import (
    DeliveryBackend,
    Notification,
    NotificationCategory,
    active_memberships,
)

logger = get_logger(__name__)

SUMMARY_WINDOW = timedelta(hours=24)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


def format_summary(owner_name: str, stats: GlucoseStats) -> tuple[str, str]:
    """Title and body of the recap for a non-empty window.

    Example body: ``Sam's Daily Recap: 82% in range, avg 131 mg/dL, 2 lows
    (288 readings)``
    """
    parts = [
        f"{round(stats.time_in_range_percent)}% in range",
        f"avg {round(stats.average)} mg/dL",
    ]
    if stats.low_count:
        parts.append(_plural(stats.low_count, "low"))
    if stats.high_count:
        parts.append(_plural(stats.high_count, "high"))

    title = f"Daily Recap: {owner_name}"
    body = f"{owner_name}'s Daily Recap: {', '.join(parts)} ({stats.count} readings)"
    return title, body


async def list_owners_with_circle(db: AsyncSession) -> list[uuid.UUID]:
    """Owners with at least one active circle member."""
    result = await db.execute(
        select(CircleMembership.owner_id)
        .where(
            CircleMembership.status == MembershipStatus.ACTIVE,
            CircleMembership.member_id.is_not(None),
        )
        .distinct()
    )
    return list(result.scalars().all())


async def summary_recipients(db: AsyncSession, owner: Account) -> list[Account]:
    """The owner and the members who can view glucose, minus opt-outs.

    Paused members get nothing.
    """
    recipients = [owner] if owner.notify_daily_summary else []
    for membership in await active_memberships(db, owner.id):
        member = membership.member
        if (
            member is not None
            and membership.view_glucose
            and not member.paused
            and member.notify_daily_summary
        ):
            recipients.append(member)
    return recipients


async def send_daily_summary(
    db: AsyncSession,
    owner_id: uuid.UUID,
    backend: DeliveryBackend,
    now: datetime | None = None,
) -> int:
    """Send the owner's recap and return how many notifications went out.

    A failed delivery is logged and does not stop the other recipients.
    """
    owner = await db.get(Account, owner_id)
    if owner is None:
        return 0

    now = now or datetime.now(timezone.utc)
    stats = await glucose_timeline.get_glucose_stats(
        db,
        owner.id,
        now - SUMMARY_WINDOW,
        low=owner.low_threshold,
        high=owner.high_threshold,
    )
    if stats.count == 0:
        return 0

    title, body = format_summary(owner.name, stats)
    data = {
        "type": "daily_summary",
        "ownerId": str(owner.id),
        "timeInRange": stats.time_in_range_percent,
        "readings": stats.count,
    }

    sent = 0
    for recipient in await summary_recipients(db, owner):
        try:
            await backend.send(
                Notification(
                    recipient_id=recipient.id,
                    category=NotificationCategory.DAILY_SUMMARY,
                    title=title,
                    body=body,
                    data=data,
                )
            )
            sent += 1
        except Exception as e:
            logger.warning(
                "Daily summary delivery failed",
                owner_id=str(owner.id),
                recipient_id=str(recipient.id),
                error=str(e),
            )

    logger.info(
        "Daily summary sent",
        owner_id=str(owner.id),
        readings=stats.count,
        sent=sent,
    )
    return sent
