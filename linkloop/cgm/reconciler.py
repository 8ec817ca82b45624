"""Feed reconciler.

Owns the lifecycle of each account's CGM connections: connecting the OAuth
and Share feeds, periodic and manual syncs, disconnect, and status. Synced
readings are merged into the timeline and the new ones are handed to the
alert pipeline.

Only one sync runs per connection at a time. A sync that fails after
retries keeps whatever pages it already ingested.
"""

import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import distinct, select
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.cgm.base import FeedReading, call_with_retry
from linkloop.cgm.dexcom_oauth import DexcomOAuthClient, OAuthTokens
from linkloop.cgm.dexcom_share import DexcomShareClient
from linkloop.config import settings
from linkloop.core.encryption import decrypt_payload, encrypt_payload
from linkloop.core.errors import (
    EngineError,
    FeedError,
    FeedNotConnected,
    FeedUnavailable,
    NotAuthorized,
    NotFound,
    ReauthRequired,
    SyncFailed,
    ValidationError,
)
from linkloop.core.locks import locks, sync_key
from linkloop.core.security import create_state_token, verify_state_token
from linkloop.logging_config import get_logger
from linkloop.models.account import Account
from linkloop.models.cgm_connection import CGMConnection, CGMConnectionType, ShareRegion
from linkloop.services import alert_pipeline, glucose_timeline
from linkloop.services.glucose_timeline import MergeResult

logger = get_logger(__name__)

OAUTH_STATE_PURPOSE = "dexcom_oauth"

# OAuth sync window: first sync looks back 3h, later syncs resume 3h
# before the last success, never further back than 24h
OAUTH_INITIAL_LOOKBACK = timedelta(hours=3)
OAUTH_RESUME_OVERLAP = timedelta(hours=3)
OAUTH_MAX_LOOKBACK = timedelta(hours=24)
EGV_PAGE_SIZE = timedelta(hours=6)


@dataclass
class SyncResult:
    """Outcome of one connection sync."""

    connection_type: CGMConnectionType
    fetched: int = 0
    inserted: int = 0
    replaced: int = 0
    duplicates: int = 0
    conflicts: int = 0
    alerts: int = 0
    last_sync_at: datetime | None = None

    def add(self, fetched: int, merge: MergeResult, alerts: int) -> None:
        self.fetched += fetched
        self.inserted += len(merge.inserted)
        self.replaced += merge.replaced
        self.duplicates += merge.duplicates
        self.conflicts += merge.conflicts
        self.alerts += alerts


@dataclass
class ConnectionStatus:
    connection_type: CGMConnectionType
    connected: bool = False
    region: ShareRegion | None = None
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None


@dataclass
class FeedStatus:
    """Both feeds plus the newest reading time for one owner."""

    connections: list[ConnectionStatus] = field(default_factory=list)
    last_reading_at: datetime | None = None


def oauth_client() -> DexcomOAuthClient:
    return DexcomOAuthClient()


def share_client(username: str, password: str, region: ShareRegion) -> DexcomShareClient:
    return DexcomShareClient(username, password, region)


def oauth_sync_window(
    last_sync_at: datetime | None, now: datetime
) -> tuple[datetime, datetime]:
    """[start, end] of EGVs to request on this sync."""
    if last_sync_at is None:
        return now - OAUTH_INITIAL_LOOKBACK, now
    start = max(last_sync_at - OAUTH_RESUME_OVERLAP, now - OAUTH_MAX_LOOKBACK)
    return start, now


def iter_pages(
    start: datetime, end: datetime, size: timedelta = EGV_PAGE_SIZE
) -> Iterator[tuple[datetime, datetime]]:
    """Split [start, end] into consecutive windows of at most ``size``."""
    page_start = start
    while page_start < end:
        page_end = min(page_start + size, end)
        yield page_start, page_end
        page_start = page_end


def _require_primary(account: Account) -> None:
    if not account.is_primary:
        raise NotAuthorized("Only primary accounts can manage CGM connections")


async def get_connection(
    db: AsyncSession, owner_id: uuid.UUID, connection_type: CGMConnectionType
) -> CGMConnection | None:
    result = await db.execute(
        select(CGMConnection).where(
            CGMConnection.owner_id == owner_id,
            CGMConnection.connection_type == connection_type,
        )
    )
    return result.scalar_one_or_none()


async def list_connected_owners(db: AsyncSession) -> list[uuid.UUID]:
    """Owners with at least one connected feed."""
    result = await db.execute(
        select(distinct(CGMConnection.owner_id)).where(
            CGMConnection.connected.is_(True)
        )
    )
    return [row[0] for row in result.all()]


async def _save_connection(
    db: AsyncSession,
    owner_id: uuid.UUID,
    connection_type: CGMConnectionType,
    payload: dict,
    region: ShareRegion | None = None,
    token_expires_at: datetime | None = None,
) -> CGMConnection:
    """Create or replace the owner's connection of this type."""
    connection = await get_connection(db, owner_id, connection_type)
    if connection is None:
        connection = CGMConnection(owner_id=owner_id, connection_type=connection_type)
        db.add(connection)

    connection.encrypted_payload = encrypt_payload(payload)
    connection.region = region
    connection.token_expires_at = token_expires_at
    connection.connected = True
    connection.connected_at = datetime.now(timezone.utc)
    connection.last_error = None
    await db.commit()
    await db.refresh(connection)
    return connection


def oauth_authorize_url(owner: Account) -> str:
    """Dexcom login URL carrying a signed state bound to the owner.

    Raises:
        NotAuthorized: If the caller is not a primary account
    """
    _require_primary(owner)
    state = create_state_token(
        owner.id, OAUTH_STATE_PURPOSE, settings.dexcom_oauth_state_ttl_minutes
    )
    return oauth_client().authorize_url(state)


async def connect_oauth(
    db: AsyncSession, owner: Account, code: str, state: str
) -> CGMConnection:
    """Complete the OAuth redirect: verify state and store the tokens.

    Raises:
        NotAuthorized: If the caller is not a primary account
        ValidationError: If the state is invalid, expired or not the caller's
        ReauthRequired: If Dexcom rejected the authorization code
        FeedUnavailable: If Dexcom stayed unreachable through retries
    """
    _require_primary(owner)
    if not verify_state_token(state, owner.id, OAUTH_STATE_PURPOSE):
        raise ValidationError("Invalid or expired OAuth state, please try again")

    client = oauth_client()
    tokens = await call_with_retry(
        lambda: client.exchange_code(code), "Dexcom code exchange"
    )
    connection = await _save_connection(
        db,
        owner.id,
        CGMConnectionType.OAUTH,
        tokens.to_payload(),
        token_expires_at=tokens.expires_at,
    )
    logger.info("Dexcom OAuth connected", owner_id=str(owner.id))
    return connection


async def connect_share(
    db: AsyncSession,
    owner: Account,
    username: str,
    password: str,
    region: ShareRegion = ShareRegion.US,
) -> tuple[CGMConnection, SyncResult]:
    """Validate Share credentials, store them, and ingest the last 24h.

    Raises:
        NotAuthorized: If the caller is not a primary account
        InvalidCredentials: If Share rejected the login
        FollowerRequired: If the login works but no follower is configured
        FeedUnavailable: If Share stayed unreachable through retries
    """
    _require_primary(owner)
    client = share_client(username, password, region)
    readings = await call_with_retry(client.verify, "Dexcom Share verification")

    connection = await _save_connection(
        db,
        owner.id,
        CGMConnectionType.SHARE,
        {"username": username, "password": password},
        region=region,
    )
    logger.info(
        "Dexcom Share connected",
        owner_id=str(owner.id),
        region=region.value,
    )

    # Ingest the verification fetch; holding the sync lock keeps a
    # scheduled sync from racing the first import
    async with locks.hold(sync_key(owner.id, CGMConnectionType.SHARE)):
        result = SyncResult(connection_type=CGMConnectionType.SHARE)
        await _ingest(db, connection, readings, result)
        connection.last_sync_at = datetime.now(timezone.utc)
        await db.commit()
        result.last_sync_at = connection.last_sync_at
    return connection, result


async def disconnect(
    db: AsyncSession, owner: Account, connection_type: CGMConnectionType
) -> None:
    """Remove a connection and its stored credentials. Readings are kept.

    Raises:
        NotFound: If no connection of that type exists
    """
    _require_primary(owner)
    async with locks.hold(sync_key(owner.id, connection_type)):
        connection = await get_connection(db, owner.id, connection_type)
        if connection is None:
            raise NotFound(f"No {connection_type.value} connection")
        await db.delete(connection)
        await db.commit()

    logger.info(
        "CGM feed disconnected",
        owner_id=str(owner.id),
        connection_type=connection_type.value,
    )


async def get_status(db: AsyncSession, owner_id: uuid.UUID) -> FeedStatus:
    """Connection state of both feeds, missing ones reported as disconnected."""
    result = await db.execute(
        select(CGMConnection).where(CGMConnection.owner_id == owner_id)
    )
    by_type = {c.connection_type: c for c in result.scalars().all()}

    status = FeedStatus()
    for connection_type in CGMConnectionType:
        connection = by_type.get(connection_type)
        if connection is None:
            status.connections.append(ConnectionStatus(connection_type=connection_type))
            continue
        status.connections.append(
            ConnectionStatus(
                connection_type=connection_type,
                connected=connection.connected,
                region=connection.region,
                connected_at=connection.connected_at,
                last_sync_at=connection.last_sync_at,
                last_error=connection.last_error,
            )
        )

    latest = await glucose_timeline.get_latest_reading(db, owner_id)
    status.last_reading_at = latest.reading_timestamp if latest else None
    return status


async def _ingest(
    db: AsyncSession,
    connection: CGMConnection,
    readings: list[FeedReading],
    result: SyncResult,
) -> None:
    merge = await glucose_timeline.merge_feed_readings(db, connection.owner_id, readings)
    outcomes = await alert_pipeline.process_new_readings(
        db, connection.owner_id, merge.new_readings
    )
    result.add(len(readings), merge, len(outcomes))


async def _mark_disconnected(
    db: AsyncSession, connection: CGMConnection, error: FeedError
) -> None:
    connection.connected = False
    connection.last_error = error.message
    await db.commit()
    logger.warning(
        "CGM feed needs user action, marked disconnected",
        owner_id=str(connection.owner_id),
        connection_type=connection.connection_type.value,
        error_code=error.code,
    )


async def _record_error(db: AsyncSession, connection: CGMConnection, message: str) -> None:
    connection.last_error = message
    await db.commit()


async def _load_tokens(connection: CGMConnection) -> OAuthTokens:
    try:
        return OAuthTokens.from_payload(decrypt_payload(connection.encrypted_payload))
    except (ValueError, KeyError) as e:
        raise ReauthRequired(
            "Stored Dexcom authorization could not be read, please reconnect Dexcom"
        ) from e


async def _sync_oauth(db: AsyncSession, connection: CGMConnection) -> SyncResult:
    result = SyncResult(connection_type=CGMConnectionType.OAUTH)
    client = oauth_client()
    tokens = await _load_tokens(connection)
    now = datetime.now(timezone.utc)

    if tokens.needs_refresh(now):
        try:
            tokens = await call_with_retry(
                lambda: client.refresh(tokens.refresh_token), "Dexcom token refresh"
            )
        except FeedUnavailable as e:
            raise SyncFailed(f"Dexcom token refresh failed: {e}") from e
        # Rotated refresh token must be persisted before anything else
        connection.encrypted_payload = encrypt_payload(tokens.to_payload())
        connection.token_expires_at = tokens.expires_at
        await db.commit()

    start, end = oauth_sync_window(connection.last_sync_at, now)
    for page_start, page_end in iter_pages(start, end):
        try:
            readings = await call_with_retry(
                lambda: client.fetch_egvs(tokens.access_token, page_start, page_end),
                "Dexcom EGV fetch",
            )
        except FeedUnavailable as e:
            raise SyncFailed(
                f"Dexcom sync failed: {e}", readings_ingested=result.inserted
            ) from e
        await _ingest(db, connection, readings, result)

    result.last_sync_at = now
    return result


async def _sync_share(db: AsyncSession, connection: CGMConnection) -> SyncResult:
    result = SyncResult(connection_type=CGMConnectionType.SHARE)
    try:
        credentials = decrypt_payload(connection.encrypted_payload)
    except ValueError as e:
        raise ReauthRequired(
            "Stored Dexcom Share credentials could not be read, please reconnect"
        ) from e

    client = share_client(
        credentials["username"],
        credentials["password"],
        connection.region or ShareRegion.US,
    )
    now = datetime.now(timezone.utc)
    try:
        readings = await call_with_retry(client.fetch_readings, "Dexcom Share fetch")
    except FeedUnavailable as e:
        raise SyncFailed(f"Dexcom Share sync failed: {e}") from e

    await _ingest(db, connection, readings, result)
    result.last_sync_at = now
    return result


async def sync_connection(
    db: AsyncSession, owner_id: uuid.UUID, connection_type: CGMConnectionType
) -> SyncResult:
    """Pull new readings from one feed and feed them to the alert pipeline.

    Feed errors that need the user (revoked grant, bad password, missing
    follower) mark the connection disconnected so the scheduler stops
    polling it.

    Raises:
        FeedNotConnected: If the feed is not connected
        ReauthRequired, InvalidCredentials, FollowerRequired: User action needed
        SyncFailed: Retries exhausted; carries the number of readings kept
    """
    async with locks.hold(sync_key(owner_id, connection_type)):
        connection = await get_connection(db, owner_id, connection_type)
        if connection is None or not connection.connected:
            raise FeedNotConnected(f"Dexcom {connection_type.value} is not connected")

        try:
            if connection_type == CGMConnectionType.OAUTH:
                result = await _sync_oauth(db, connection)
            else:
                result = await _sync_share(db, connection)
        except FeedError as e:
            await _mark_disconnected(db, connection, e)
            raise
        except SyncFailed as e:
            await _record_error(db, connection, e.message)
            logger.warning(
                "CGM sync failed",
                owner_id=str(owner_id),
                connection_type=connection_type.value,
                readings_ingested=e.readings_ingested,
            )
            raise

        connection.last_sync_at = result.last_sync_at
        connection.last_error = None
        await db.commit()

    logger.info(
        "CGM sync complete",
        owner_id=str(owner_id),
        connection_type=connection_type.value,
        fetched=result.fetched,
        inserted=result.inserted,
        replaced=result.replaced,
        alerts=result.alerts,
    )
    return result


async def sync_for_account(
    db: AsyncSession, account: Account, connection_type: CGMConnectionType
) -> SyncResult:
    """Manual sync requested by the owner."""
    _require_primary(account)
    return await sync_connection(db, account.id, connection_type)


@dataclass
class AccountSyncResult:
    """Per-feed results and errors of syncing one owner."""

    results: list[SyncResult] = field(default_factory=list)
    errors: dict[CGMConnectionType, EngineError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


async def sync_all(db: AsyncSession, owner_id: uuid.UUID) -> AccountSyncResult:
    """Sync every connected feed of one owner.

    OAuth runs first so the overlapping Share readings that follow are
    recognised as duplicates instead of being stored and then replaced.
    A failing feed does not stop the other one.
    """
    result = await db.execute(
        select(CGMConnection.connection_type).where(
            CGMConnection.owner_id == owner_id,
            CGMConnection.connected.is_(True),
        )
    )
    connection_types = sorted(
        result.scalars().all(), key=lambda t: t != CGMConnectionType.OAUTH
    )

    outcome = AccountSyncResult()
    for connection_type in connection_types:
        try:
            outcome.results.append(
                await sync_connection(db, owner_id, connection_type)
            )
        except EngineError as e:
            outcome.errors[connection_type] = e
    return outcome
