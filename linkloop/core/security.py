"""JWT verification for tokens issued by the identity collaborator.

This service never issues access tokens; it only verifies them and
extracts the caller's account id and role.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from linkloop.config import settings


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT access token.

    Args:
        token: The JWT token string to decode

    Returns:
        Token payload dict if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )

        if payload.get("type") != "access":
            return None

        return payload

    except JWTError:
        return None


class TokenData:
    """Parsed token data for type safety."""

    def __init__(self, payload: dict):
        self.account_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.role: str = payload["role"]
        self.name: str | None = payload.get("name")


def create_state_token(account_id: uuid.UUID, purpose: str, ttl_minutes: int) -> str:
    """Sign a short-lived opaque state value (OAuth redirect round-trips).

    Args:
        account_id: Account the state belongs to
        purpose: Value checked on verification to prevent token reuse elsewhere
        ttl_minutes: Lifetime of the state value

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(account_id),
        "purpose": purpose,
        "nonce": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes),
        "type": "state",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_state_token(token: str, account_id: uuid.UUID, purpose: str) -> bool:
    """Check a state value produced by create_state_token()."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return False
    return (
        payload.get("type") == "state"
        and payload.get("purpose") == purpose
        and payload.get("sub") == str(account_id)
    )
