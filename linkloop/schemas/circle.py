"""Care-circle schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from linkloop.models.circle import CircleMembership, MembershipStatus


class InviteCreateRequest(BaseModel):
    """Permissions granted to whoever redeems the invite."""

    view_glucose: bool = True
    receive_low_alerts: bool = True
    receive_high_alerts: bool = False


class JoinCircleRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class MembershipResponse(BaseModel):
    """A circle membership or pending invite."""

    id: uuid.UUID
    owner_id: uuid.UUID
    member_id: uuid.UUID | None = None
    member_name: str | None = None
    invite_code: str | None = None
    status: MembershipStatus
    view_glucose: bool
    receive_low_alerts: bool
    receive_high_alerts: bool
    joined_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_membership(cls, membership: CircleMembership) -> "MembershipResponse":
        return cls(
            id=membership.id,
            owner_id=membership.owner_id,
            member_id=membership.member_id,
            member_name=membership.member.name if membership.member else None,
            invite_code=membership.invite_code,
            status=membership.status,
            view_glucose=membership.view_glucose,
            receive_low_alerts=membership.receive_low_alerts,
            receive_high_alerts=membership.receive_high_alerts,
            joined_at=membership.joined_at,
            created_at=membership.created_at,
        )


class CircleResponse(BaseModel):
    members: list[MembershipResponse]
    count: int


class MembershipUpdate(BaseModel):
    """Owner-side changes to one member; omitted fields are unchanged."""

    status: MembershipStatus | None = Field(
        default=None, description="'active' or 'paused'"
    )
    view_glucose: bool | None = None
    receive_low_alerts: bool | None = None
    receive_high_alerts: bool | None = None
