"""Alert state machine.

Owns the alert lifecycle: active -> acknowledged -> resolved, or
active -> resolved. Resolved is terminal. At most one open alert per
(owner, family) exists at any time; the check and the insert happen
under a per-family lock, with a partial unique index as the backstop.

Every committed transition is handed to the notification dispatcher.
"""

import enum
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.config import settings
from linkloop.core.errors import (
    AlreadyResolved,
    DuplicateActive,
    NotAuthorized,
    NotFound,
)
from linkloop.core.locks import alert_key, family_key, locks
from linkloop.logging_config import get_logger
from linkloop.models.account import Account
from linkloop.models.alert import (
    ALERT_FAMILY,
    OPEN_STATUSES,
    SEVERITY_RANK,
    Alert,
    AlertFamily,
    AlertSeverity,
    AlertStatus,
    AlertType,
)
from linkloop.services import ack_ledger
from linkloop.services.circle import is_active_member
from linkloop.services.notification_dispatcher import AlertEvent, EventKind, dispatcher
from linkloop.services.threshold_evaluator import AlertDecision, ReadingPoint

logger = get_logger(__name__)

# Ordering within a family; escalation only moves up
TYPE_RANK = {
    AlertType.LOW: 1,
    AlertType.URGENT_LOW: 2,
    AlertType.HIGH: 1,
    AlertType.URGENT_HIGH: 2,
    AlertType.RAPID_DROP: 1,
    AlertType.RAPID_RISE: 1,
    AlertType.NO_DATA: 1,
}

ALERT_TITLES = {
    AlertType.URGENT_LOW: "Very Low",
    AlertType.LOW: "Low Reading",
    AlertType.HIGH: "High Reading",
    AlertType.URGENT_HIGH: "Very High",
    AlertType.RAPID_DROP: "Dropping Fast",
    AlertType.RAPID_RISE: "Rising Fast",
    AlertType.NO_DATA: "No Recent Data",
}


class DecisionOutcome(str, enum.Enum):
    """What apply_decision() did with an evaluator decision."""

    OPENED = "opened"
    ESCALATED = "escalated"
    REOPENED = "reopened"  # Recovered alert superseded by a fresh one
    SUPPRESSED = "suppressed"


def build_alert_copy(
    alert_type: AlertType, value: int | None, name: str
) -> tuple[str, str]:
    """Title and message for an alert about ``name``'s glucose."""
    title = ALERT_TITLES[alert_type]
    if alert_type == AlertType.URGENT_LOW or alert_type == AlertType.URGENT_HIGH:
        message = (
            f"{name}'s glucose is {value} mg/dL. You may want to check in with them."
        )
    elif alert_type == AlertType.LOW:
        message = (
            f"{name}'s glucose is {value} mg/dL (below their range). "
            "You may want to check in."
        )
    elif alert_type == AlertType.HIGH:
        message = f"{name}'s glucose is {value} mg/dL (above their range)."
    elif alert_type == AlertType.RAPID_DROP:
        message = f"{name}'s glucose is dropping quickly (now {value} mg/dL)."
    elif alert_type == AlertType.RAPID_RISE:
        message = f"{name}'s glucose is rising quickly (now {value} mg/dL)."
    else:
        message = (
            f"No glucose data from {name} for over "
            f"{settings.stale_data_window_minutes} minutes. "
            "Check the sensor and feed connection."
        )
    return title, message


def is_escalation(alert: Alert, decision: AlertDecision) -> bool:
    """True when the decision is strictly more severe than the open alert."""
    return (
        TYPE_RANK[decision.alert_type] > TYPE_RANK[alert.alert_type]
        or SEVERITY_RANK[decision.severity] > SEVERITY_RANK[alert.severity]
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_alert(db: AsyncSession, alert_id: uuid.UUID) -> Alert:
    """Load an alert with its acknowledgments, bypassing stale session state.

    Raises:
        NotFound: If no alert has this id
    """
    result = await db.execute(
        select(Alert)
        .where(Alert.id == alert_id)
        .execution_options(populate_existing=True)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        raise NotFound("Alert not found", alert_id=str(alert_id))
    return alert


async def get_open_alert(
    db: AsyncSession, owner_id: uuid.UUID, family: AlertFamily
) -> Alert | None:
    """The active or acknowledged alert of the family, if any."""
    result = await db.execute(
        select(Alert)
        .where(
            Alert.owner_id == owner_id,
            Alert.family == family,
            Alert.status.in_(OPEN_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_alerts(
    db: AsyncSession,
    owner_id: uuid.UUID,
    statuses: Sequence[AlertStatus] | None = None,
    limit: int = 50,
) -> list[Alert]:
    """Alerts for the owner, newest first, optionally filtered by status."""
    query = select(Alert).where(Alert.owner_id == owner_id)
    if statuses:
        query = query.where(Alert.status.in_(statuses))
    query = query.order_by(Alert.created_at.desc()).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def count_alerts_by_family(
    db: AsyncSession, owner_id: uuid.UUID, since: datetime
) -> dict[AlertFamily, int]:
    """Number of alerts created since ``since`` per family."""
    result = await db.execute(
        select(Alert.family, func.count(Alert.id))
        .where(Alert.owner_id == owner_id, Alert.created_at >= since)
        .group_by(Alert.family)
    )
    counts = {family: 0 for family in AlertFamily}
    for family, total in result.all():
        counts[family] = total
    return counts


# ---------------------------------------------------------------------------
# Transitions (callers hold the family lock)
# ---------------------------------------------------------------------------


async def _create(
    db: AsyncSession,
    owner: Account,
    alert_type: AlertType,
    severity: AlertSeverity,
    value: int | None,
) -> Alert:
    family = ALERT_FAMILY[alert_type]
    if await get_open_alert(db, owner.id, family) is not None:
        raise DuplicateActive(
            f"An open {family.value} alert already exists",
            family=family.value,
        )

    title, message = build_alert_copy(alert_type, value, owner.name)
    alert = Alert(
        owner_id=owner.id,
        alert_type=alert_type,
        family=family,
        severity=severity,
        glucose_value=value,
        status=AlertStatus.ACTIVE,
        title=title,
        message=message,
        created_at=datetime.now(timezone.utc),
    )
    db.add(alert)
    try:
        await db.commit()
    except IntegrityError as e:
        # Lost a race against another process
        await db.rollback()
        raise DuplicateActive(
            f"An open {family.value} alert already exists",
            family=family.value,
        ) from e

    logger.info(
        "Alert opened",
        alert_id=str(alert.id),
        owner_id=str(owner.id),
        alert_type=alert_type.value,
        severity=severity.value,
        glucose_value=value,
    )
    return await get_alert(db, alert.id)


async def _escalate(
    db: AsyncSession, owner: Account, alert: Alert, decision: AlertDecision
) -> Alert | None:
    """Upgrade an open alert in place. Returns None if it closed meanwhile."""
    previous_type = alert.alert_type
    title, message = build_alert_copy(decision.alert_type, decision.value, owner.name)
    result = await db.execute(
        update(Alert)
        .where(Alert.id == alert.id, Alert.status != AlertStatus.RESOLVED)
        .values(
            alert_type=decision.alert_type,
            severity=decision.severity,
            glucose_value=decision.value,
            title=title,
            message=message,
        )
    )
    if result.rowcount == 0:
        await db.rollback()
        return None
    await db.commit()

    logger.info(
        "Alert escalated",
        alert_id=str(alert.id),
        owner_id=str(owner.id),
        from_type=previous_type.value,
        to_type=decision.alert_type.value,
        severity=decision.severity.value,
    )
    return await get_alert(db, alert.id)


async def _supersede(db: AsyncSession, alert: Alert) -> Alert | None:
    """System-resolve an open alert. Does not commit."""
    result = await db.execute(
        update(Alert)
        .where(Alert.id == alert.id, Alert.status != AlertStatus.RESOLVED)
        .values(
            status=AlertStatus.RESOLVED,
            resolved_at=datetime.now(timezone.utc),
            resolved_by=None,
        )
    )
    return alert if result.rowcount else None


def _emit(kind: EventKind, alert: Alert, owner_name: str, **kwargs) -> None:
    dispatcher.dispatch(AlertEvent.from_alert(kind, alert, owner_name, **kwargs))


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


async def open_alert(
    db: AsyncSession,
    owner: Account,
    alert_type: AlertType,
    severity: AlertSeverity,
    value: int | None,
    reading: ReadingPoint | None = None,
    history: Sequence[ReadingPoint] = (),
) -> Alert:
    """Open a new active alert for the owner.

    Raises:
        DuplicateActive: If an alert of the same family is still open
    """
    family = ALERT_FAMILY[alert_type]
    async with locks.hold(family_key(owner.id, family)):
        alert = await _create(db, owner, alert_type, severity, value)

    _emit(EventKind.OPENED, alert, owner.name, reading=reading, history=tuple(history))
    return alert


async def apply_decision(
    db: AsyncSession,
    owner: Account,
    decision: AlertDecision,
    reading: ReadingPoint | None = None,
    history: Sequence[ReadingPoint] = (),
) -> tuple[DecisionOutcome, Alert | None]:
    """Turn an evaluator decision into a state change, deduplicating by family.

    - No open alert of the family: open one.
    - Open alert that has recovered since it opened: supersede it and open
      a fresh one (glucose went back into range and out again).
    - Open alert and the decision is more severe: escalate in place.
    - Otherwise: suppressed.
    """
    family = decision.family
    history = tuple(history)

    async with locks.hold(family_key(owner.id, family)):
        existing = await get_open_alert(db, owner.id, family)

        if existing is None:
            alert = await _create(
                db, owner, decision.alert_type, decision.severity, decision.value
            )
            outcome = DecisionOutcome.OPENED

        elif existing.recovered_at is not None:
            async with locks.hold(alert_key(existing.id)):
                superseded = await _supersede(db, existing)
                if superseded is not None:
                    await db.commit()
                    logger.info(
                        "Recovered alert superseded",
                        alert_id=str(existing.id),
                        owner_id=str(owner.id),
                    )
            if superseded is not None:
                _emit(
                    EventKind.RESOLVED,
                    await get_alert(db, existing.id),
                    owner.name,
                )
            alert = await _create(
                db, owner, decision.alert_type, decision.severity, decision.value
            )
            outcome = DecisionOutcome.REOPENED

        elif is_escalation(existing, decision):
            async with locks.hold(alert_key(existing.id)):
                alert = await _escalate(db, owner, existing, decision)
            if alert is None:
                alert = await _create(
                    db, owner, decision.alert_type, decision.severity, decision.value
                )
                outcome = DecisionOutcome.OPENED
            else:
                outcome = DecisionOutcome.ESCALATED

        else:
            logger.debug(
                "Alert suppressed by open alert",
                owner_id=str(owner.id),
                family=family.value,
                open_alert_id=str(existing.id),
            )
            return DecisionOutcome.SUPPRESSED, existing

    kind = EventKind.ESCALATED if outcome == DecisionOutcome.ESCALATED else EventKind.OPENED
    _emit(kind, alert, owner.name, reading=reading, history=history)
    return outcome, alert


async def mark_recovered(
    db: AsyncSession,
    owner_id: uuid.UUID,
    families: Sequence[AlertFamily],
) -> int:
    """Record that glucose left the alerting condition for open alerts.

    Only the first recovery is stored. Returns the number of alerts updated.
    """
    if not families:
        return 0
    result = await db.execute(
        update(Alert)
        .where(
            Alert.owner_id == owner_id,
            Alert.family.in_(families),
            Alert.status.in_(OPEN_STATUSES),
            Alert.recovered_at.is_(None),
        )
        .values(recovered_at=datetime.now(timezone.utc))
    )
    await db.commit()
    if result.rowcount:
        logger.info(
            "Open alerts marked recovered",
            owner_id=str(owner_id),
            families=[f.value for f in families],
            count=result.rowcount,
        )
    return result.rowcount


async def acknowledge_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    user: Account,
    message: str | None = None,
) -> Alert:
    """Acknowledge an open alert on behalf of ``user``.

    Allowed for the owner and active circle members of the owner.

    Raises:
        NotFound: If the alert does not exist
        NotAuthorized: If the user is neither the owner nor an active member
        AlreadyResolved: If the alert is resolved
        DuplicateAcknowledgment: If the user already acknowledged it
        ValidationError: If the message is too long
    """
    async with locks.hold(alert_key(alert_id)):
        alert = await get_alert(db, alert_id)

        if alert.owner_id != user.id and not await is_active_member(
            db, alert.owner_id, user.id
        ):
            raise NotAuthorized("Not a member of this care circle")

        if alert.status == AlertStatus.RESOLVED:
            raise AlreadyResolved("Alert is already resolved", alert_id=str(alert_id))

        entry = await ack_ledger.append(db, alert, user, message)

        result = await db.execute(
            update(Alert)
            .where(Alert.id == alert_id, Alert.status != AlertStatus.RESOLVED)
            .values(status=AlertStatus.ACKNOWLEDGED)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise AlreadyResolved("Alert is already resolved", alert_id=str(alert_id))
        await db.commit()

        alert = await get_alert(db, alert_id)
        owner = await db.get(Account, alert.owner_id)

    logger.info(
        "Alert acknowledged",
        alert_id=str(alert_id),
        user_id=str(user.id),
        acknowledgments=len(alert.acknowledgments),
    )
    _emit(
        EventKind.ACKNOWLEDGED,
        alert,
        owner.name if owner else user.name,
        actor_id=user.id,
        actor_name=user.name,
        ack_message=entry.message,
    )
    return alert


async def resolve_alert(db: AsyncSession, alert_id: uuid.UUID, user: Account) -> Alert:
    """Resolve an alert. Only the owning primary account may resolve.

    The status change is conditional on the alert not being resolved at
    commit time, so a racing resolve loses with AlreadyResolved.

    Raises:
        NotFound: If the alert does not exist
        NotAuthorized: If the user is not the owner
        AlreadyResolved: If the alert is already resolved
    """
    async with locks.hold(alert_key(alert_id)):
        alert = await get_alert(db, alert_id)

        if alert.owner_id != user.id:
            raise NotAuthorized("Only the account owner can resolve alerts")

        result = await db.execute(
            update(Alert)
            .where(Alert.id == alert_id, Alert.status != AlertStatus.RESOLVED)
            .values(
                status=AlertStatus.RESOLVED,
                resolved_at=datetime.now(timezone.utc),
                resolved_by=user.id,
            )
        )
        if result.rowcount == 0:
            await db.rollback()
            raise AlreadyResolved("Alert is already resolved", alert_id=str(alert_id))
        await db.commit()

        alert = await get_alert(db, alert_id)

    logger.info("Alert resolved", alert_id=str(alert_id), user_id=str(user.id))
    _emit(EventKind.RESOLVED, alert, user.name, actor_id=user.id)
    return alert
