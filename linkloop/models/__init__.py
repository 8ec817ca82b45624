# Database Models
from linkloop.models.account import Account, AccountRole
from linkloop.models.alert import (
    Alert,
    AlertAcknowledgment,
    AlertFamily,
    AlertSeverity,
    AlertStatus,
    AlertType,
)
from linkloop.models.base import Base, TimestampMixin
from linkloop.models.cgm_connection import CGMConnection, CGMConnectionType, ShareRegion
from linkloop.models.circle import CircleMembership, MembershipStatus
from linkloop.models.glucose import GlucoseReading, GlucoseTrend, ReadingSource

__all__ = [
    "Account",
    "AccountRole",
    "Alert",
    "AlertAcknowledgment",
    "AlertFamily",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "Base",
    "CGMConnection",
    "CGMConnectionType",
    "CircleMembership",
    "GlucoseReading",
    "GlucoseTrend",
    "MembershipStatus",
    "ReadingSource",
    "ShareRegion",
    "TimestampMixin",
]
