"""Tests for alert settings and notification preferences."""

import pytest

from linkloop.core.errors import ValidationError
from linkloop.services import account_settings


class TestValidateThresholds:
    @pytest.mark.parametrize(
        "low,high,delay",
        [(40, 400, 0), (70, 180, 0), (70, 71, 120)],
    )
    def test_valid(self, low, high, delay):
        account_settings.validate_thresholds(low, high, delay)

    @pytest.mark.parametrize(
        "low,high,delay",
        [
            (39, 180, 0),
            (70, 401, 0),
            (180, 180, 0),
            (200, 180, 0),
            (70, 180, -1),
            (70, 180, 121),
        ],
    )
    def test_invalid(self, low, high, delay):
        with pytest.raises(ValidationError):
            account_settings.validate_thresholds(low, high, delay)


class TestUpdateAlertSettings:
    async def test_partial_update(self, db_session, owner):
        updated = await account_settings.update_alert_settings(
            db_session, owner, high_threshold=200
        )
        assert (updated.low_threshold, updated.high_threshold) == (70, 200)
        assert updated.high_alert_delay_minutes == 0

    async def test_validated_against_merged_values(self, db_session, owner):
        # 190 is valid alone but not below the existing high of 180
        with pytest.raises(ValidationError):
            await account_settings.update_alert_settings(db_session, owner, low_threshold=190)

    async def test_moving_both_bounds(self, db_session, owner):
        updated = await account_settings.update_alert_settings(
            db_session, owner, low_threshold=190, high_threshold=250
        )
        assert (updated.low_threshold, updated.high_threshold) == (190, 250)

    async def test_delay(self, db_session, owner):
        updated = await account_settings.update_alert_settings(
            db_session, owner, high_alert_delay_minutes=45
        )
        assert updated.high_alert_delay_minutes == 45

    async def test_rejected_update_leaves_settings(self, db_session, owner):
        with pytest.raises(ValidationError):
            await account_settings.update_alert_settings(
                db_session, owner, high_alert_delay_minutes=500
            )
        await db_session.refresh(owner)
        assert owner.high_alert_delay_minutes == 0


class TestNotificationPreferences:
    async def test_member_pauses(self, db_session, member):
        updated = await account_settings.update_notification_preferences(
            db_session, member, paused=True
        )
        assert updated.paused is True

    async def test_primary_cannot_pause(self, db_session, owner):
        with pytest.raises(ValidationError):
            await account_settings.update_notification_preferences(
                db_session, owner, paused=True
            )

    async def test_category_toggle(self, db_session, owner):
        updated = await account_settings.update_notification_preferences(
            db_session,
            owner,
            notify_acknowledgments=False,
            notify_alert_resolved=None,
        )
        assert updated.notify_acknowledgments is False
        assert updated.notify_alert_resolved is True
        assert updated.notify_glucose_alerts is True

    async def test_daily_summary_opt_out(self, db_session, member):
        assert member.notify_daily_summary is True

        updated = await account_settings.update_notification_preferences(
            db_session, member, notify_daily_summary=False
        )
        assert updated.notify_daily_summary is False

    async def test_unknown_preference(self, db_session, owner):
        with pytest.raises(ValidationError):
            await account_settings.update_notification_preferences(
                db_session, owner, notify_marketing=True
            )
