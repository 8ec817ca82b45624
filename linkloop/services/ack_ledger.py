"""Acknowledgment ledger.

Per-alert, append-only record of who responded. Each account may
acknowledge a given alert at most once; entries are never edited or removed.
"""

import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.errors import DuplicateAcknowledgment, ValidationError
from linkloop.logging_config import get_logger
from linkloop.models.account import Account
from linkloop.models.alert import (
    DEFAULT_ACK_MESSAGE,
    MAX_ACK_MESSAGE_LENGTH,
    Alert,
    AlertAcknowledgment,
)

logger = get_logger(__name__)


def normalize_message(message: str | None) -> str:
    """Trim the message, fall back to the default text, enforce the length cap.

    Raises:
        ValidationError: If the trimmed message is longer than 200 characters
    """
    text = (message or "").strip()
    if not text:
        return DEFAULT_ACK_MESSAGE
    if len(text) > MAX_ACK_MESSAGE_LENGTH:
        raise ValidationError(
            f"Acknowledgment message must be at most {MAX_ACK_MESSAGE_LENGTH} characters"
        )
    return text


async def has_acknowledged(
    db: AsyncSession, alert_id: uuid.UUID, user_id: uuid.UUID
) -> bool:
    result = await db.execute(
        select(AlertAcknowledgment.id).where(
            AlertAcknowledgment.alert_id == alert_id,
            AlertAcknowledgment.user_id == user_id,
        )
    )
    return result.first() is not None


async def count(db: AsyncSession, alert_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(AlertAcknowledgment.id)).where(
            AlertAcknowledgment.alert_id == alert_id
        )
    )
    return result.scalar_one()


async def append(
    db: AsyncSession,
    alert: Alert,
    user: Account,
    message: str | None = None,
) -> AlertAcknowledgment:
    """Append an acknowledgment for ``user`` to ``alert``.

    Flushes but does not commit; the caller owns the transaction so the
    entry and the alert status change land together. The session is
    rolled back when the database rejects a duplicate.

    Raises:
        ValidationError: If the message is too long
        DuplicateAcknowledgment: If the user already acknowledged this alert
    """
    text = normalize_message(message)

    if await has_acknowledged(db, alert.id, user.id):
        raise DuplicateAcknowledgment(
            "You have already acknowledged this alert",
            alert_id=str(alert.id),
        )

    entry = AlertAcknowledgment(
        alert_id=alert.id,
        user_id=user.id,
        user_name=user.name,
        message=text,
    )
    db.add(entry)
    try:
        # Unique (alert_id, user_id) guards against a concurrent append
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateAcknowledgment(
            "You have already acknowledged this alert",
            alert_id=str(alert.id),
        ) from e

    logger.info(
        "Acknowledgment recorded",
        alert_id=str(alert.id),
        user_id=str(user.id),
    )
    return entry
