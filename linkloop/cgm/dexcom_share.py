"""Dexcom Share feed adapter.

Logs in with the account's Share username and password through pydexcom
and pulls the real-time follower feed. pydexcom is blocking, so every
call runs in a worker thread.
"""

import asyncio
from datetime import datetime, timezone

from pydexcom import Dexcom
from pydexcom import errors as dexcom_errors
from pydexcom.const import Region

from linkloop.cgm.base import FeedReading, is_plausible
from linkloop.core.errors import FeedUnavailable, FollowerRequired, InvalidCredentials
from linkloop.logging_config import get_logger
from linkloop.models.cgm_connection import ShareRegion
from linkloop.models.glucose import ReadingSource, map_dexcom_trend

logger = get_logger(__name__)

# Share serves at most 24 hours of history, one reading per 5 minutes
SHARE_MAX_MINUTES = 1440
SHARE_MAX_COUNT = 288


def to_feed_reading(reading) -> FeedReading | None:
    """Convert a pydexcom GlucoseReading; None for unusable values."""
    value = reading.value
    if not is_plausible(value):
        return None
    timestamp: datetime = reading.datetime
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return FeedReading(
        timestamp=timestamp.astimezone(timezone.utc),
        value=int(value),
        trend=map_dexcom_trend(reading.trend),
        source=ReadingSource.DEXCOM_SHARE,
    )


class DexcomShareClient:
    """Share session for one account.

    Error mapping:
    - pydexcom AccountError: InvalidCredentials
    - pydexcom SessionError and network errors: FeedUnavailable (retryable)
    - login succeeds but no data at all: FollowerRequired (see verify())
    """

    def __init__(self, username: str, password: str, region: ShareRegion = ShareRegion.US):
        self.username = username
        self.password = password
        self.region = region
        self._dexcom: Dexcom | None = None

    def _login(self) -> Dexcom:
        return Dexcom(
            username=self.username,
            password=self.password,
            region=Region(self.region.value),
        )

    async def login(self) -> None:
        try:
            self._dexcom = await asyncio.to_thread(self._login)
        except dexcom_errors.AccountError as e:
            logger.warning(
                "Dexcom Share login rejected",
                region=self.region.value,
                error=str(e),
            )
            raise InvalidCredentials(
                "Dexcom Share rejected the username or password"
            ) from e
        except (dexcom_errors.SessionError, OSError) as e:
            raise FeedUnavailable(f"Dexcom Share login failed: {e}") from e

    async def fetch_readings(
        self, minutes: int = SHARE_MAX_MINUTES, max_count: int = SHARE_MAX_COUNT
    ) -> list[FeedReading]:
        """Readings from the last ``minutes``, logging in first if needed."""
        if self._dexcom is None:
            await self.login()

        try:
            raw = await asyncio.to_thread(
                self._dexcom.get_glucose_readings, minutes=minutes, max_count=max_count
            )
        except dexcom_errors.SessionError as e:
            # Session expired; next attempt logs in again
            self._dexcom = None
            raise FeedUnavailable(f"Dexcom Share session error: {e}") from e
        except dexcom_errors.AccountError as e:
            self._dexcom = None
            raise InvalidCredentials(
                "Dexcom Share rejected the username or password"
            ) from e
        except OSError as e:
            raise FeedUnavailable(f"Dexcom Share unreachable: {e}") from e

        readings = []
        for reading in raw or []:
            converted = to_feed_reading(reading)
            if converted is not None:
                readings.append(converted)
        return readings

    async def verify(self) -> list[FeedReading]:
        """Log in and confirm the feed has data.

        Share only publishes readings when at least one follower is set up
        in the Dexcom app, so a working login with an empty day of data
        means the follower step is missing.

        Raises:
            InvalidCredentials: Wrong username or password
            FollowerRequired: No follower configured upstream
            FeedUnavailable: Transient failure
        """
        await self.login()
        readings = await self.fetch_readings()
        if not readings:
            raise FollowerRequired(
                "Dexcom Share has no data. Add at least one follower in the "
                "Dexcom app, then try again."
            )
        return readings
