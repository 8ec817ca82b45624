"""Tests for the reading -> alert pipeline and the stale feed check."""

from datetime import datetime, timedelta, timezone

import pytest

from linkloop.cgm.base import FeedReading
from linkloop.config import settings
from linkloop.core.encryption import encrypt_credential
from linkloop.core.errors import NotAuthorized
from linkloop.models.account import AccountRole
from linkloop.models.alert import AlertFamily, AlertStatus, AlertType
from linkloop.models.cgm_connection import CGMConnection, CGMConnectionType
from linkloop.models.glucose import GlucoseTrend, ReadingSource
from linkloop.services import alert_pipeline, alert_state_machine, glucose_timeline
from linkloop.services.alert_state_machine import DecisionOutcome
from linkloop.services.notification_dispatcher import dispatcher
from linkloop.services.threshold_evaluator import ReadingPoint, ThresholdSettings


def feed(value, minutes_ago):
    return FeedReading(
        timestamp=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        value=value,
        trend=GlucoseTrend.STABLE,
        source=ReadingSource.DEXCOM_OAUTH,
    )


async def ingest(db, owner, *readings):
    """Merge feed readings and run the new ones through the pipeline."""
    merged = await glucose_timeline.merge_feed_readings(db, owner.id, list(readings))
    return await alert_pipeline.process_new_readings(db, owner.id, merged.new_readings)


async def open_alerts(db, owner):
    return await alert_state_machine.list_alerts(
        db, owner.id, statuses=[AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED]
    )


class TestClearedFamilies:
    NOW = datetime.now(timezone.utc)

    def test_in_range_clears_low_and_high(self):
        point = ReadingPoint(120, self.NOW)
        cleared = alert_pipeline.cleared_families(point, ThresholdSettings(), [])
        assert set(cleared) == set(AlertFamily)

    def test_low_reading_keeps_low_open(self):
        point = ReadingPoint(60, self.NOW)
        cleared = alert_pipeline.cleared_families(point, ThresholdSettings(), [])
        assert AlertFamily.LOW not in cleared
        assert AlertFamily.HIGH in cleared

    def test_continuing_drop_keeps_rapid_drop_open(self):
        point = ReadingPoint(100, self.NOW)
        history = [ReadingPoint(125, self.NOW - timedelta(minutes=5))]
        cleared = alert_pipeline.cleared_families(point, ThresholdSettings(), history)
        assert AlertFamily.RAPID_DROP not in cleared
        assert AlertFamily.RAPID_RISE in cleared


# ---------------------------------------------------------------------------
# Manual readings
# ---------------------------------------------------------------------------
class TestManualReadings:
    async def test_low_reading_opens_alert(self, db_session, owner, member, add_member, notifications):
        await add_member(owner, member)

        reading = await alert_pipeline.submit_manual_reading(db_session, owner, 62)
        await dispatcher.drain()

        assert reading.source == ReadingSource.MANUAL
        alerts = await open_alerts(db_session, owner)
        assert [a.alert_type for a in alerts] == [AlertType.LOW]
        assert notifications.recipients() == {owner.id, member.id}
        assert notifications.for_recipient(member.id)[0].body.startswith(
            "Sam's glucose is 62 mg/dL"
        )

    async def test_in_range_reading_opens_nothing(self, db_session, owner):
        await alert_pipeline.submit_manual_reading(db_session, owner, 120)
        assert await open_alerts(db_session, owner) == []

    async def test_member_cannot_log_readings(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        with pytest.raises(NotAuthorized):
            await alert_pipeline.submit_manual_reading(db_session, member, 120)


# ---------------------------------------------------------------------------
# Feed readings
# ---------------------------------------------------------------------------
class TestFeedScenarios:
    async def test_rapid_drop(self, db_session, owner):
        outcomes = await ingest(db_session, owner, feed(135, 5), feed(112, 0))

        assert len(outcomes) == 1
        outcome, alert = outcomes[0]
        assert outcome == DecisionOutcome.OPENED
        assert alert.alert_type == AlertType.RAPID_DROP

    async def test_low_escalates_to_urgent_low(self, db_session, owner):
        await ingest(db_session, owner, feed(65, 5))
        outcomes = await ingest(db_session, owner, feed(52, 0))

        outcome, alert = outcomes[-1]
        assert outcome == DecisionOutcome.ESCALATED
        assert alert.alert_type == AlertType.URGENT_LOW
        assert len(await open_alerts(db_session, owner)) == 1

    async def test_persisting_low_is_suppressed(self, db_session, owner):
        await ingest(db_session, owner, feed(65, 10))
        outcomes = await ingest(db_session, owner, feed(64, 5), feed(66, 0))

        assert all(o == DecisionOutcome.SUPPRESSED for o, _ in outcomes)
        assert len(await open_alerts(db_session, owner)) == 1

    async def test_recovery_then_new_low_reopens(self, db_session, owner):
        first = (await ingest(db_session, owner, feed(65, 10)))[0][1]
        await ingest(db_session, owner, feed(78, 5))

        recovered = await alert_state_machine.get_alert(db_session, first.id)
        assert recovered.recovered_at is not None
        assert recovered.status == AlertStatus.ACTIVE

        outcome, alert = (await ingest(db_session, owner, feed(66, 0)))[0]
        assert outcome == DecisionOutcome.REOPENED
        assert alert.id != first.id
        superseded = await alert_state_machine.get_alert(db_session, first.id)
        assert superseded.status == AlertStatus.RESOLVED

    async def test_sustained_high_respects_delay(self, db_session, owner):
        owner.high_alert_delay_minutes = 15
        await db_session.commit()

        outcomes = await ingest(
            db_session, owner, feed(195, 15), feed(198, 10), feed(199, 5)
        )
        assert outcomes == []

        outcomes = await ingest(db_session, owner, feed(200, 0))
        assert outcomes[0][1].alert_type == AlertType.HIGH

    async def test_backfilled_readings_are_not_alerted(self, db_session, owner):
        outcomes = await ingest(db_session, owner, feed(50, 120), feed(52, 115))

        assert outcomes == []
        assert await open_alerts(db_session, owner) == []
        readings = await glucose_timeline.get_readings(
            db_session, owner.id, datetime.now(timezone.utc) - timedelta(hours=3)
        )
        assert len(readings) == 2

    async def test_evaluation_age_boundary(self, db_session, owner):
        max_age = settings.evaluation_max_age_minutes

        assert await ingest(db_session, owner, feed(50, max_age + 1)) == []

        outcomes = await ingest(db_session, owner, feed(52, max_age - 1))
        assert outcomes[0][1].alert_type == AlertType.URGENT_LOW

    async def test_oauth_replacement_is_not_reevaluated(self, db_session, owner):
        share = FeedReading(
            timestamp=datetime.now(timezone.utc) - timedelta(minutes=1),
            value=64,
            trend=GlucoseTrend.STABLE,
            source=ReadingSource.DEXCOM_SHARE,
        )
        await ingest(db_session, owner, share)
        alert = (await open_alerts(db_session, owner))[0]
        await alert_state_machine.resolve_alert(db_session, alert.id, owner)

        oauth = FeedReading(
            timestamp=share.timestamp + timedelta(seconds=20),
            value=64,
            trend=GlucoseTrend.STABLE,
            source=ReadingSource.DEXCOM_OAUTH,
        )
        assert await ingest(db_session, owner, oauth) == []
        assert await open_alerts(db_session, owner) == []

    async def test_member_thresholds_filter_fan_out(
        self, db_session, owner, member, make_account, add_member, notifications
    ):
        relaxed = await make_account(AccountRole.MEMBER, "Jordan", low_threshold=55)
        await add_member(owner, member)
        await add_member(owner, relaxed)

        await ingest(db_session, owner, feed(64, 0))
        await dispatcher.drain()

        assert notifications.recipients() == {owner.id, member.id}


# ---------------------------------------------------------------------------
# Stale feeds
# ---------------------------------------------------------------------------
class TestStaleFeed:
    async def connect(self, db, owner, minutes_ago):
        connection = CGMConnection(
            owner_id=owner.id,
            connection_type=CGMConnectionType.SHARE,
            encrypted_payload=encrypt_credential("{}"),
            connected=True,
            connected_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        )
        db.add(connection)
        await db.commit()
        return connection

    async def test_no_connection_is_never_stale(self, db_session, owner):
        assert await alert_pipeline.check_stale_feed(db_session, owner.id) is None

    async def test_recent_connect_without_readings(self, db_session, owner):
        await self.connect(db_session, owner, minutes_ago=10)
        assert await alert_pipeline.check_stale_feed(db_session, owner.id) is None

    async def test_quiet_feed_opens_no_data(self, db_session, owner):
        await self.connect(db_session, owner, minutes_ago=120)
        await glucose_timeline.merge_feed_readings(db_session, owner.id, [feed(110, 45)])

        outcome, alert = await alert_pipeline.check_stale_feed(db_session, owner.id)

        assert outcome == DecisionOutcome.OPENED
        assert alert.alert_type == AlertType.NO_DATA
        assert alert.glucose_value is None

    async def test_repeated_check_is_suppressed(self, db_session, owner):
        await self.connect(db_session, owner, minutes_ago=120)
        await alert_pipeline.check_stale_feed(db_session, owner.id)

        outcome, _ = await alert_pipeline.check_stale_feed(db_session, owner.id)
        assert outcome == DecisionOutcome.SUPPRESSED

    async def test_fresh_reading_recovers_no_data(self, db_session, owner):
        await self.connect(db_session, owner, minutes_ago=120)
        _, alert = await alert_pipeline.check_stale_feed(db_session, owner.id)

        await ingest(db_session, owner, feed(110, 0))

        reloaded = await alert_state_machine.get_alert(db_session, alert.id)
        assert reloaded.recovered_at is not None
        assert await alert_pipeline.check_stale_feed(db_session, owner.id) is None

    async def test_disconnected_feed_is_not_checked(self, db_session, owner):
        connection = await self.connect(db_session, owner, minutes_ago=120)
        connection.connected = False
        await db_session.commit()

        assert await alert_pipeline.check_stale_feed(db_session, owner.id) is None
