"""Engine error taxonomy.

Every error carries the HTTP status and a stable machine-readable code so
routers can let them propagate to the application exception handler.
"""

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors."""

    status_code = 400
    code = "engine_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class ValidationError(EngineError):
    """Out-of-range input (reading value, thresholds, message length)."""

    status_code = 422
    code = "validation_error"


class NotAuthorized(EngineError):
    """Caller's role or circle permissions do not allow the operation."""

    status_code = 403
    code = "not_authorized"


class NotFound(EngineError):
    status_code = 404
    code = "not_found"


class DuplicateActive(EngineError):
    """An alert of the same family is already open for the owner."""

    status_code = 409
    code = "duplicate_active"


class DuplicateAcknowledgment(EngineError):
    """The caller has already acknowledged this alert."""

    status_code = 409
    code = "duplicate_acknowledgment"


class AlreadyResolved(EngineError):
    """The alert is terminal; no further transition is accepted."""

    status_code = 409
    code = "already_resolved"


# ---------------------------------------------------------------------------
# Feed errors
# ---------------------------------------------------------------------------


class FeedError(EngineError):
    """Base exception for CGM feed errors that need caller action."""

    status_code = 424
    code = "feed_error"


class ReauthRequired(FeedError):
    """The OAuth grant was rejected or expired; the user must reconnect."""

    code = "reauth_required"


class InvalidCredentials(FeedError):
    """Share login rejected the username or password."""

    code = "invalid_credentials"


class FollowerRequired(FeedError):
    """Share login worked but the account has no follower configured upstream."""

    code = "follower_required"


class FeedNotConnected(FeedError):
    code = "feed_not_connected"


class FeedUnavailable(EngineError):
    """Transient feed failure (network, 5xx, throttling). Retried internally."""

    status_code = 503
    code = "feed_unavailable"


class SyncFailed(EngineError):
    """Retries exhausted; readings ingested before the failure are kept."""

    status_code = 502
    code = "sync_failed"

    def __init__(self, message: str, readings_ingested: int = 0):
        super().__init__(message, readings_ingested=readings_ingested)
        self.readings_ingested = readings_ingested
