"""Tests for the alert lifecycle: open, dedup, escalate, acknowledge, resolve."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from linkloop.core.errors import (
    AlreadyResolved,
    DuplicateAcknowledgment,
    DuplicateActive,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from linkloop.database import get_session_maker
from linkloop.models.account import AccountRole
from linkloop.models.alert import (
    DEFAULT_ACK_MESSAGE,
    AlertFamily,
    AlertSeverity,
    AlertStatus,
    AlertType,
)
from linkloop.models.circle import MembershipStatus
from linkloop.services import alert_state_machine
from linkloop.services.alert_state_machine import DecisionOutcome, build_alert_copy
from linkloop.services.notification_dispatcher import dispatcher
from linkloop.services.threshold_evaluator import AlertDecision

LOW = AlertDecision(AlertType.LOW, AlertSeverity.WARNING, 65)
URGENT_LOW = AlertDecision(AlertType.URGENT_LOW, AlertSeverity.CRITICAL, 50)


async def open_low(db, owner, value=65):
    return await alert_state_machine.open_alert(
        db, owner, AlertType.LOW, AlertSeverity.WARNING, value
    )


# ---------------------------------------------------------------------------
# Alert copy
# ---------------------------------------------------------------------------
class TestAlertCopy:
    def test_low_copy_names_the_owner(self):
        title, message = build_alert_copy(AlertType.LOW, 65, "Sam")
        assert title == "Low Reading"
        assert message.startswith("Sam's glucose is 65 mg/dL")

    def test_no_data_copy_has_no_value(self):
        title, message = build_alert_copy(AlertType.NO_DATA, None, "Sam")
        assert title == "No Recent Data"
        assert "None" not in message


# ---------------------------------------------------------------------------
# Opening and deduplication
# ---------------------------------------------------------------------------
class TestOpenAlert:
    async def test_opens_active_alert(self, db_session, owner):
        alert = await open_low(db_session, owner)

        assert alert.status == AlertStatus.ACTIVE
        assert alert.family == AlertFamily.LOW
        assert alert.glucose_value == 65
        assert alert.acknowledgments == []
        assert alert.resolved_at is None

    async def test_second_open_in_family_is_rejected(self, db_session, owner):
        await open_low(db_session, owner)
        with pytest.raises(DuplicateActive):
            await alert_state_machine.open_alert(
                db_session, owner, AlertType.URGENT_LOW, AlertSeverity.CRITICAL, 50
            )

    async def test_different_families_coexist(self, db_session, owner):
        await open_low(db_session, owner)
        rapid = await alert_state_machine.open_alert(
            db_session, owner, AlertType.RAPID_DROP, AlertSeverity.URGENT, 65
        )
        assert rapid.status == AlertStatus.ACTIVE

    async def test_acknowledged_alert_still_blocks_family(self, db_session, owner):
        alert = await open_low(db_session, owner)
        await alert_state_machine.acknowledge_alert(db_session, alert.id, owner)

        with pytest.raises(DuplicateActive):
            await open_low(db_session, owner)

    async def test_resolved_alert_frees_family(self, db_session, owner):
        alert = await open_low(db_session, owner)
        await alert_state_machine.resolve_alert(db_session, alert.id, owner)

        fresh = await open_low(db_session, owner)
        assert fresh.id != alert.id

    async def test_owners_are_independent(self, db_session, owner, make_account):
        other = await make_account(name="Robin")
        await open_low(db_session, owner)
        alert = await open_low(db_session, other)
        assert alert.owner_id == other.id


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------
class TestApplyDecision:
    async def test_opens_when_family_is_free(self, db_session, owner):
        outcome, alert = await alert_state_machine.apply_decision(db_session, owner, LOW)
        assert outcome == DecisionOutcome.OPENED
        assert alert.alert_type == AlertType.LOW

    async def test_same_decision_is_suppressed(self, db_session, owner):
        _, first = await alert_state_machine.apply_decision(db_session, owner, LOW)
        outcome, alert = await alert_state_machine.apply_decision(db_session, owner, LOW)

        assert outcome == DecisionOutcome.SUPPRESSED
        assert alert.id == first.id

    async def test_escalates_in_place(self, db_session, owner):
        _, first = await alert_state_machine.apply_decision(db_session, owner, LOW)
        outcome, alert = await alert_state_machine.apply_decision(
            db_session, owner, URGENT_LOW
        )

        assert outcome == DecisionOutcome.ESCALATED
        assert alert.id == first.id
        assert alert.alert_type == AlertType.URGENT_LOW
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.glucose_value == 50
        assert alert.title == "Very Low"

        open_alerts = await alert_state_machine.list_alerts(db_session, owner.id)
        assert len(open_alerts) == 1

    async def test_less_severe_decision_does_not_downgrade(self, db_session, owner):
        await alert_state_machine.apply_decision(db_session, owner, URGENT_LOW)
        outcome, alert = await alert_state_machine.apply_decision(db_session, owner, LOW)

        assert outcome == DecisionOutcome.SUPPRESSED
        assert alert.alert_type == AlertType.URGENT_LOW

    async def test_escalation_keeps_acknowledged_status(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        _, alert = await alert_state_machine.apply_decision(db_session, owner, LOW)
        await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

        _, escalated = await alert_state_machine.apply_decision(
            db_session, owner, URGENT_LOW
        )
        assert escalated.status == AlertStatus.ACKNOWLEDGED
        assert len(escalated.acknowledgments) == 1

    async def test_recross_after_recovery_supersedes(self, db_session, owner):
        _, first = await alert_state_machine.apply_decision(db_session, owner, LOW)
        updated = await alert_state_machine.mark_recovered(
            db_session, owner.id, [AlertFamily.LOW]
        )
        assert updated == 1

        outcome, alert = await alert_state_machine.apply_decision(db_session, owner, LOW)

        assert outcome == DecisionOutcome.REOPENED
        assert alert.id != first.id
        superseded = await alert_state_machine.get_alert(db_session, first.id)
        assert superseded.status == AlertStatus.RESOLVED
        assert superseded.resolved_by is None

    async def test_recovery_is_recorded_once(self, db_session, owner):
        await alert_state_machine.apply_decision(db_session, owner, LOW)
        assert await alert_state_machine.mark_recovered(db_session, owner.id, [AlertFamily.LOW]) == 1
        assert await alert_state_machine.mark_recovered(db_session, owner.id, [AlertFamily.LOW]) == 0

    async def test_mark_recovered_without_families(self, db_session, owner):
        assert await alert_state_machine.mark_recovered(db_session, owner.id, []) == 0

    async def test_concurrent_decisions_open_one_alert(self, db_engine, owner):
        session_maker = get_session_maker()

        async def decide():
            async with session_maker() as db:
                outcome, alert = await alert_state_machine.apply_decision(db, owner, LOW)
                return outcome, alert.id

        results = await asyncio.gather(*(decide() for _ in range(5)))

        outcomes = [outcome for outcome, _ in results]
        assert outcomes.count(DecisionOutcome.OPENED) == 1
        assert outcomes.count(DecisionOutcome.SUPPRESSED) == 4
        assert len({alert_id for _, alert_id in results}) == 1


# ---------------------------------------------------------------------------
# Acknowledgment
# ---------------------------------------------------------------------------
class TestAcknowledge:
    async def test_member_acknowledges(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)

        acked = await alert_state_machine.acknowledge_alert(
            db_session, alert.id, member, "  On my way  "
        )

        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert len(acked.acknowledgments) == 1
        entry = acked.acknowledgments[0]
        assert entry.user_id == member.id
        assert entry.user_name == "Alex"
        assert entry.message == "On my way"

    async def test_default_message(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)

        acked = await alert_state_machine.acknowledge_alert(db_session, alert.id, member)
        assert acked.acknowledgments[0].message == DEFAULT_ACK_MESSAGE

    async def test_owner_can_acknowledge_own_alert(self, db_session, owner):
        alert = await open_low(db_session, owner)
        acked = await alert_state_machine.acknowledge_alert(db_session, alert.id, owner)
        assert acked.status == AlertStatus.ACKNOWLEDGED

    async def test_multiple_members_accumulate(self, db_session, owner, member, make_account, add_member):
        second = await make_account(AccountRole.MEMBER, "Jordan")
        await add_member(owner, member)
        await add_member(owner, second)
        alert = await open_low(db_session, owner)

        await alert_state_machine.acknowledge_alert(db_session, alert.id, member)
        acked = await alert_state_machine.acknowledge_alert(db_session, alert.id, second)

        assert [a.user_name for a in acked.acknowledgments] == ["Alex", "Jordan"]

    async def test_duplicate_acknowledgment(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)
        await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

        with pytest.raises(DuplicateAcknowledgment):
            await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

        reloaded = await alert_state_machine.get_alert(db_session, alert.id)
        assert len(reloaded.acknowledgments) == 1

    async def test_stranger_cannot_acknowledge(self, db_session, owner, member):
        alert = await open_low(db_session, owner)
        with pytest.raises(NotAuthorized):
            await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

    async def test_paused_membership_cannot_acknowledge(self, db_session, owner, member, add_member):
        await add_member(owner, member, status=MembershipStatus.PAUSED)
        alert = await open_low(db_session, owner)
        with pytest.raises(NotAuthorized):
            await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

    async def test_resolved_alert_cannot_be_acknowledged(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)
        await alert_state_machine.resolve_alert(db_session, alert.id, owner)

        with pytest.raises(AlreadyResolved):
            await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

    async def test_message_too_long(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)
        with pytest.raises(ValidationError):
            await alert_state_machine.acknowledge_alert(
                db_session, alert.id, member, "x" * 201
            )

        reloaded = await alert_state_machine.get_alert(db_session, alert.id)
        assert reloaded.status == AlertStatus.ACTIVE

    async def test_unknown_alert(self, db_session, owner):
        with pytest.raises(NotFound):
            await alert_state_machine.acknowledge_alert(db_session, uuid.uuid4(), owner)

    async def test_concurrent_acknowledgments_all_recorded(
        self, db_engine, db_session, owner, make_account, add_member
    ):
        members = []
        for i in range(4):
            account = await make_account(AccountRole.MEMBER, f"Member {i}")
            await add_member(owner, account)
            members.append(account)
        alert = await open_low(db_session, owner)
        session_maker = get_session_maker()

        async def ack(account):
            async with session_maker() as db:
                await alert_state_machine.acknowledge_alert(db, alert.id, account)

        await asyncio.gather(*(ack(m) for m in members))

        reloaded = await alert_state_machine.get_alert(db_session, alert.id)
        assert reloaded.status == AlertStatus.ACKNOWLEDGED
        assert {a.user_id for a in reloaded.acknowledgments} == {m.id for m in members}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------
class TestResolve:
    async def test_owner_resolves(self, db_session, owner):
        alert = await open_low(db_session, owner)
        resolved = await alert_state_machine.resolve_alert(db_session, alert.id, owner)

        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_by == owner.id
        assert resolved.resolved_at is not None

    async def test_resolve_keeps_acknowledgments(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)
        await alert_state_machine.acknowledge_alert(db_session, alert.id, member)

        resolved = await alert_state_machine.resolve_alert(db_session, alert.id, owner)
        assert len(resolved.acknowledgments) == 1

    async def test_member_cannot_resolve(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)
        with pytest.raises(NotAuthorized):
            await alert_state_machine.resolve_alert(db_session, alert.id, member)

    async def test_resolve_twice(self, db_session, owner):
        alert = await open_low(db_session, owner)
        await alert_state_machine.resolve_alert(db_session, alert.id, owner)
        with pytest.raises(AlreadyResolved):
            await alert_state_machine.resolve_alert(db_session, alert.id, owner)

    async def test_concurrent_resolves_have_one_winner(self, db_engine, db_session, owner):
        alert = await open_low(db_session, owner)
        session_maker = get_session_maker()

        async def resolve():
            async with session_maker() as db:
                await alert_state_machine.resolve_alert(db, alert.id, owner)

        results = await asyncio.gather(resolve(), resolve(), return_exceptions=True)

        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyResolved)) == 1


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
class TestQueries:
    async def test_list_filters_by_status(self, db_session, owner):
        low = await open_low(db_session, owner)
        await alert_state_machine.open_alert(
            db_session, owner, AlertType.HIGH, AlertSeverity.WARNING, 200
        )
        await alert_state_machine.resolve_alert(db_session, low.id, owner)

        active = await alert_state_machine.list_alerts(
            db_session, owner.id, statuses=[AlertStatus.ACTIVE]
        )
        assert [a.alert_type for a in active] == [AlertType.HIGH]

        everything = await alert_state_machine.list_alerts(db_session, owner.id)
        assert len(everything) == 2

    async def test_count_by_family(self, db_session, owner):
        await open_low(db_session, owner)
        await alert_state_machine.open_alert(
            db_session, owner, AlertType.HIGH, AlertSeverity.WARNING, 200
        )

        counts = await alert_state_machine.count_alerts_by_family(
            db_session, owner.id, datetime.now(timezone.utc) - timedelta(hours=1)
        )
        assert counts[AlertFamily.LOW] == 1
        assert counts[AlertFamily.HIGH] == 1
        assert counts[AlertFamily.NO_DATA] == 0


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class TestTransitionEvents:
    async def test_transitions_reach_the_dispatcher(
        self, db_session, owner, member, add_member, notifications
    ):
        await add_member(owner, member)
        alert = await open_low(db_session, owner)
        await dispatcher.drain()
        assert notifications.recipients() == {owner.id, member.id}

        notifications.clear()
        await alert_state_machine.acknowledge_alert(db_session, alert.id, member)
        await dispatcher.drain()
        assert notifications.recipients() == {owner.id}

        notifications.clear()
        await alert_state_machine.resolve_alert(db_session, alert.id, owner)
        await dispatcher.drain()
        assert notifications.recipients() == {member.id}

    async def test_delivery_failure_does_not_undo_transition(
        self, db_session, owner, member, add_member
    ):
        class FailingBackend:
            async def send(self, notification):
                raise RuntimeError("push gateway down")

        await add_member(owner, member)
        dispatcher.backend = FailingBackend()
        try:
            alert = await open_low(db_session, owner)
            await dispatcher.drain()
        finally:
            dispatcher.backend = None

        reloaded = await alert_state_machine.get_alert(db_session, alert.id)
        assert reloaded.status == AlertStatus.ACTIVE
