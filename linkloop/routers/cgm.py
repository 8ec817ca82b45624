"""CGM feed router.

Connect the Dexcom OAuth or Share feed, trigger a manual sync, disconnect,
and report connection status.
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.cgm import reconciler
from linkloop.core.auth import CurrentAccount, PrimaryAccount
from linkloop.database import get_db
from linkloop.middleware.rate_limit import limiter
from linkloop.models.cgm_connection import CGMConnection, CGMConnectionType
from linkloop.schemas.cgm import (
    CGMConnectResponse,
    CGMDisconnectResponse,
    CGMStatusResponse,
    ConnectionStatusResponse,
    OAuthAuthorizeResponse,
    OAuthConnectRequest,
    ShareConnectRequest,
    SyncResponse,
)
from linkloop.services import circle

router = APIRouter(prefix="/api/cgm", tags=["cgm"])


def _connection_response(connection: CGMConnection) -> ConnectionStatusResponse:
    return ConnectionStatusResponse.model_validate(connection)


@router.get("/status", response_model=CGMStatusResponse)
async def feed_status(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> CGMStatusResponse:
    """Connection state of both feeds for the caller's circle."""
    owner_id = await circle.resolve_owner_scope(db, account)
    feed = await reconciler.get_status(db, owner_id)
    return CGMStatusResponse.model_validate(feed)


@router.get("/oauth/authorize", response_model=OAuthAuthorizeResponse)
async def oauth_authorize(account: PrimaryAccount) -> OAuthAuthorizeResponse:
    """Dexcom login URL; the redirect carries a state bound to the caller."""
    return OAuthAuthorizeResponse(authorize_url=reconciler.oauth_authorize_url(account))


@router.post(
    "/oauth/connect",
    response_model=CGMConnectResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("10/minute")
async def oauth_connect(
    request: Request,
    body: OAuthConnectRequest,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> CGMConnectResponse:
    """Exchange the authorization code and store the tokens."""
    connection = await reconciler.connect_oauth(db, account, body.code, body.state)
    return CGMConnectResponse(
        message="Dexcom connected",
        connection=_connection_response(connection),
    )


@router.post(
    "/share/connect",
    response_model=CGMConnectResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("10/minute")
async def share_connect(
    request: Request,
    body: ShareConnectRequest,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> CGMConnectResponse:
    """Validate Share credentials, store them and import the last 24 hours."""
    connection, result = await reconciler.connect_share(
        db, account, body.username, body.password, body.region
    )
    return CGMConnectResponse(
        message="Dexcom Share connected",
        connection=_connection_response(connection),
        sync=SyncResponse.model_validate(result),
    )


@router.post("/{connection_type}/sync", response_model=SyncResponse)
@limiter.limit("12/minute")
async def sync_now(
    request: Request,
    connection_type: CGMConnectionType,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> SyncResponse:
    """Sync one feed immediately instead of waiting for the scheduler."""
    result = await reconciler.sync_for_account(db, account, connection_type)
    return SyncResponse.model_validate(result)


@router.delete("/{connection_type}", response_model=CGMDisconnectResponse)
async def disconnect(
    connection_type: CGMConnectionType,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> CGMDisconnectResponse:
    """Remove the feed and its stored credentials. Readings are kept."""
    await reconciler.disconnect(db, account, connection_type)
    return CGMDisconnectResponse()
