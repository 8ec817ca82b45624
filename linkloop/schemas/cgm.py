"""CGM feed connection schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from linkloop.models.cgm_connection import CGMConnectionType, ShareRegion


class OAuthAuthorizeResponse(BaseModel):
    authorize_url: str = Field(..., description="Dexcom login URL to open")


class OAuthConnectRequest(BaseModel):
    """Authorization code and state returned to the redirect URI."""

    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class ShareConnectRequest(BaseModel):
    """Request schema for Dexcom Share credentials."""

    username: str = Field(..., min_length=1, description="Dexcom account username")
    password: str = Field(..., min_length=1, description="Dexcom account password")
    region: ShareRegion = Field(
        default=ShareRegion.US, description="'us' or 'ous' (outside the US)"
    )


class ConnectionStatusResponse(BaseModel):
    model_config = {"from_attributes": True}

    connection_type: CGMConnectionType
    connected: bool
    region: ShareRegion | None = None
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None


class CGMStatusResponse(BaseModel):
    """Both feeds plus the newest stored reading time."""

    model_config = {"from_attributes": True}

    connections: list[ConnectionStatusResponse]
    last_reading_at: datetime | None = None


class SyncResponse(BaseModel):
    """Counts from one sync run."""

    model_config = {"from_attributes": True}

    connection_type: CGMConnectionType
    fetched: int
    inserted: int
    replaced: int
    duplicates: int
    conflicts: int
    alerts: int
    last_sync_at: datetime | None = None


class CGMConnectResponse(BaseModel):
    message: str
    connection: ConnectionStatusResponse
    sync: SyncResponse | None = None


class CGMDisconnectResponse(BaseModel):
    message: str = Field(default="CGM feed disconnected")
