"""Dexcom developer API (OAuth 2.0) feed adapter.

Handles the authorization redirect, code exchange, refresh-token rotation
and estimated glucose value (EGV) retrieval from the v3 API.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from linkloop.cgm.base import FeedReading, is_plausible
from linkloop.config import settings
from linkloop.core.errors import FeedError, FeedUnavailable, ReauthRequired
from linkloop.logging_config import get_logger
from linkloop.models.glucose import ReadingSource, map_dexcom_trend

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://sandbox-api.dexcom.com"
PRODUCTION_BASE_URL = "https://api.dexcom.com"

LOGIN_PATH = "/v3/oauth2/login"
TOKEN_PATH = "/v3/oauth2/token"
EGVS_PATH = "/v3/users/self/egvs"

# Dexcom expects naive UTC timestamps in this format
DEXCOM_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Refresh this long before the access token actually expires
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class OAuthTokens:
    """Access/refresh token pair with the access token's expiry."""

    access_token: str
    refresh_token: str
    expires_at: datetime

    def needs_refresh(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - TOKEN_REFRESH_MARGIN

    def to_payload(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OAuthTokens":
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_at=datetime.fromisoformat(payload["expires_at"]),
        )


def format_dexcom_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(DEXCOM_DATE_FORMAT)


def parse_dexcom_time(value: str) -> datetime:
    """Parse a Dexcom systemTime; values without an offset are UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_egv_records(records: list[dict[str, Any]]) -> list[FeedReading]:
    """Convert EGV records to feed readings, skipping unusable ones.

    Records with a null value (sensor reports "high"/"low") or a value
    outside 20-600 mg/dL are dropped.
    """
    readings = []
    for record in records:
        value = record.get("value")
        system_time = record.get("systemTime")
        if value is None or system_time is None:
            continue
        value = round(value)
        if not is_plausible(value):
            continue
        readings.append(
            FeedReading(
                timestamp=parse_dexcom_time(system_time),
                value=value,
                trend=map_dexcom_trend(record.get("trend")),
                source=ReadingSource.DEXCOM_OAUTH,
            )
        )
    return readings


class DexcomOAuthClient:
    """Thin async client over the Dexcom v3 API.

    Error mapping:
    - 401, or an invalid_grant on the token endpoint: ReauthRequired
    - transport errors, 429 and 5xx: FeedUnavailable (retryable)
    - other 4xx: FeedError
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id if client_id is not None else settings.dexcom_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.dexcom_client_secret
        )
        self.redirect_uri = redirect_uri or settings.dexcom_redirect_uri
        self.base_url = base_url or (
            SANDBOX_BASE_URL if settings.dexcom_use_sandbox else PRODUCTION_BASE_URL
        )
        self.timeout = timeout or settings.dexcom_http_timeout_seconds
        self._transport = transport

    def authorize_url(self, state: str) -> str:
        """URL the user visits to grant access."""
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": "offline_access",
                "state": state,
            }
        )
        return f"{self.base_url}{LOGIN_PATH}?{query}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise FeedUnavailable(f"Dexcom unreachable: {e}") from e

        if response.status_code == 401:
            raise ReauthRequired(
                "Dexcom authorization expired, please reconnect Dexcom"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise FeedUnavailable(f"Dexcom returned {response.status_code}")
        if response.status_code == 400 and path == TOKEN_PATH:
            error = _error_code(response)
            if error == "invalid_grant":
                raise ReauthRequired(
                    "Dexcom authorization was revoked, please reconnect Dexcom"
                )
        if response.status_code >= 400:
            raise FeedError(
                f"Dexcom rejected the request ({response.status_code})",
                status=response.status_code,
            )
        return response

    async def _token_request(self, form: dict[str, str]) -> OAuthTokens:
        response = await self._request(
            "POST",
            TOKEN_PATH,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **form,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        body = response.json()
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body["refresh_token"],
            expires_at=datetime.now(timezone.utc)
            + timedelta(seconds=int(body.get("expires_in", 7200))),
        )

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for the first token pair."""
        return await self._token_request(
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Rotate the token pair. The returned refresh token replaces the old one."""
        tokens = await self._token_request(
            {
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "redirect_uri": self.redirect_uri,
            }
        )
        logger.debug("Dexcom OAuth token refreshed", expires_at=tokens.expires_at)
        return tokens

    async def fetch_egvs(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[FeedReading]:
        """EGVs with systemTime in [start, end]."""
        response = await self._request(
            "GET",
            EGVS_PATH,
            params={
                "startDate": format_dexcom_time(start),
                "endDate": format_dexcom_time(end),
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return parse_egv_records(response.json().get("records") or [])


def _error_code(response: httpx.Response) -> str | None:
    try:
        return response.json().get("error")
    except ValueError:
        return None
