"""Notification dispatcher.

Translates alert state transitions into notifications for the owner and
the care circle, honouring each recipient's permissions, preferences and
pause state. Dispatch is fire-and-forget: delivery runs in a background
task with its own database session, and failures are logged without ever
affecting the transition that triggered them.
"""

import asyncio
import enum
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.config import settings
from linkloop.database import get_session_maker
from linkloop.logging_config import get_logger
from linkloop.models.account import Account
from linkloop.models.alert import Alert, AlertFamily, AlertSeverity, AlertStatus, AlertType
from linkloop.models.circle import CircleMembership, MembershipStatus
from linkloop.services.threshold_evaluator import (
    AlertDecision,
    ReadingPoint,
    build_contexts,
    matching_account_ids,
)

logger = get_logger(__name__)


class EventKind(str, enum.Enum):
    OPENED = "opened"
    ESCALATED = "escalated"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class NotificationCategory(str, enum.Enum):
    """Preference categories a recipient can switch off."""

    GLUCOSE_ALERTS = "glucoseAlerts"
    ACKNOWLEDGMENTS = "acknowledgments"
    ALERT_RESOLVED = "alertResolved"
    DAILY_SUMMARY = "dailySummary"


EVENT_CATEGORY = {
    EventKind.OPENED: NotificationCategory.GLUCOSE_ALERTS,
    EventKind.ESCALATED: NotificationCategory.GLUCOSE_ALERTS,
    EventKind.ACKNOWLEDGED: NotificationCategory.ACKNOWLEDGMENTS,
    EventKind.RESOLVED: NotificationCategory.ALERT_RESOLVED,
}

# Alert families a member needs receive_low_alerts / receive_high_alerts for
LOW_PERMISSION_FAMILIES = {AlertFamily.LOW, AlertFamily.RAPID_DROP}
HIGH_PERMISSION_FAMILIES = {AlertFamily.HIGH, AlertFamily.RAPID_RISE}


@dataclass(frozen=True)
class AlertEvent:
    """A state transition worth telling the circle about."""

    kind: EventKind
    alert_id: uuid.UUID
    owner_id: uuid.UUID
    owner_name: str
    alert_type: AlertType
    family: AlertFamily
    severity: AlertSeverity
    status: AlertStatus
    glucose_value: int | None
    title: str
    message: str
    actor_id: uuid.UUID | None = None
    actor_name: str | None = None
    ack_message: str | None = None
    # Reading that triggered an opened/escalated alert, for member thresholds
    reading: ReadingPoint | None = None
    history: tuple[ReadingPoint, ...] = ()

    @classmethod
    def from_alert(
        cls, kind: EventKind, alert: Alert, owner_name: str, **kwargs: Any
    ) -> "AlertEvent":
        return cls(
            kind=kind,
            alert_id=alert.id,
            owner_id=alert.owner_id,
            owner_name=owner_name,
            alert_type=alert.alert_type,
            family=alert.family,
            severity=alert.severity,
            status=alert.status,
            glucose_value=alert.glucose_value,
            title=alert.title,
            message=alert.message,
            **kwargs,
        )

    @property
    def decision(self) -> AlertDecision:
        return AlertDecision(self.alert_type, self.severity, self.glucose_value)


@dataclass(frozen=True)
class Notification:
    """One message for one recipient, handed to the delivery backend."""

    recipient_id: uuid.UUID
    category: NotificationCategory
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


class DeliveryBackend(Protocol):
    async def send(self, notification: Notification) -> None: ...


class LoggingBackend:
    """Default backend: records each notification in the log."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification delivered",
            recipient_id=str(notification.recipient_id),
            category=notification.category.value,
            title=notification.title,
            alert_id=notification.data.get("alertId"),
        )


class WebhookBackend:
    """Posts each notification as JSON to the delivery collaborator."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def send(self, notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                json={
                    "recipientId": str(notification.recipient_id),
                    "category": notification.category.value,
                    "title": notification.title,
                    "body": notification.body,
                    "data": notification.data,
                },
            )
        response.raise_for_status()


def default_backend() -> DeliveryBackend:
    if settings.notification_webhook_url:
        return WebhookBackend(
            settings.notification_webhook_url,
            timeout=settings.notification_webhook_timeout_seconds,
        )
    return LoggingBackend()


def has_alert_permission(membership: CircleMembership, family: AlertFamily) -> bool:
    """Whether the membership's permission flags cover the alert family."""
    if family in LOW_PERMISSION_FAMILIES:
        return membership.receive_low_alerts
    if family in HIGH_PERMISSION_FAMILIES:
        return membership.receive_high_alerts
    # no_data matters to anyone receiving alerts at all
    return membership.receive_low_alerts or membership.receive_high_alerts


async def active_memberships(
    db: AsyncSession, owner_id: uuid.UUID
) -> list[CircleMembership]:
    """Active memberships of the owner's circle with a member attached."""
    result = await db.execute(
        select(CircleMembership).where(
            CircleMembership.owner_id == owner_id,
            CircleMembership.status == MembershipStatus.ACTIVE,
            CircleMembership.member_id.is_not(None),
        )
    )
    return list(result.scalars().all())


async def resolve_recipients(db: AsyncSession, event: AlertEvent) -> list[Account]:
    """Accounts that should be told about the event.

    Args:
        db: Database session
        event: The transition being dispatched

    Returns:
        Recipient accounts, owner first when included
    """
    owner = await db.get(Account, event.owner_id)
    if owner is None:
        return []
    memberships = await active_memberships(db, event.owner_id)
    members = [m.member for m in memberships if m.member is not None]
    awake = [m for m in members if not m.paused]

    if event.kind in (EventKind.OPENED, EventKind.ESCALATED):
        recipients = [owner] if owner.notify_glucose_alerts else []
        eligible = [
            m.member
            for m in memberships
            if m.member is not None
            and not m.member.paused
            and m.member.notify_glucose_alerts
            and has_alert_permission(m, event.family)
        ]
        matched = matching_account_ids(
            event.decision,
            build_contexts(eligible),
            event.reading,
            event.history,
            settings.high_run_gap_minutes,
        )
        recipients.extend(a for a in eligible if a.id in matched)
        return recipients

    if event.kind == EventKind.ACKNOWLEDGED:
        candidates = [owner, *awake]
        return [
            a
            for a in candidates
            if a.id != event.actor_id and a.notify_acknowledgments
        ]

    # Resolved: the owner closed it (or the system superseded it)
    return [a for a in awake if a.notify_alert_resolved and a.id != event.actor_id]


def build_notification(event: AlertEvent, recipient: Account) -> Notification:
    data = {
        "alertId": str(event.alert_id),
        "type": event.alert_type.value,
        "severity": event.severity.value,
        "status": event.status.value,
        "event": event.kind.value,
    }

    if event.kind == EventKind.ACKNOWLEDGED:
        title = f"{event.actor_name} is on it"
        body = f"{event.actor_name}: {event.ack_message}"
    elif event.kind == EventKind.RESOLVED:
        title = "Alert resolved"
        body = f"{event.owner_name}'s {event.title.lower()} alert has been resolved."
    else:
        title = event.title
        body = event.message

    return Notification(
        recipient_id=recipient.id,
        category=EVENT_CATEGORY[event.kind],
        title=title,
        body=body,
        data=data,
    )


class NotificationDispatcher:
    """Schedules delivery of alert events without blocking the caller."""

    def __init__(
        self,
        backend: DeliveryBackend | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
    ):
        self._backend = backend
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    @property
    def backend(self) -> DeliveryBackend:
        if self._backend is None:
            self._backend = default_backend()
        return self._backend

    @backend.setter
    def backend(self, backend: DeliveryBackend | None) -> None:
        self._backend = backend

    def dispatch(self, event: AlertEvent) -> asyncio.Task:
        """Start delivering the event in the background and return at once."""
        task = asyncio.create_task(self._deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding delivery (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _deliver(self, event: AlertEvent) -> int:
        """Resolve recipients and send. Never raises."""
        try:
            factory = self._session_factory or get_session_maker()
            async with factory() as db:
                recipients = await resolve_recipients(db, event)
        except Exception as e:
            logger.error(
                "Failed to resolve notification recipients",
                alert_id=str(event.alert_id),
                event=event.kind.value,
                error=str(e),
            )
            return 0

        sent = 0
        for recipient in recipients:
            try:
                await self.backend.send(build_notification(event, recipient))
                sent += 1
            except Exception as e:
                logger.warning(
                    "Notification delivery failed",
                    alert_id=str(event.alert_id),
                    recipient_id=str(recipient.id),
                    event=event.kind.value,
                    error=str(e),
                )

        logger.debug(
            "Alert event dispatched",
            alert_id=str(event.alert_id),
            event=event.kind.value,
            recipients=len(recipients),
            sent=sent,
        )
        return sent


dispatcher = NotificationDispatcher()
