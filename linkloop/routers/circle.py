"""Care-circle router.

Owners issue invite codes, list and manage members; members redeem a
code to join and may leave on their own.
"""

import uuid

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.auth import CurrentAccount, MemberAccount, PrimaryAccount
from linkloop.core.errors import NotFound
from linkloop.database import get_db
from linkloop.middleware.rate_limit import limiter
from linkloop.schemas.circle import (
    CircleResponse,
    InviteCreateRequest,
    JoinCircleRequest,
    MembershipResponse,
    MembershipUpdate,
)
from linkloop.services import circle

router = APIRouter(prefix="/api/circle", tags=["circle"])


@router.post(
    "/invites",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("10/minute")
async def create_invite(
    request: Request,
    body: InviteCreateRequest,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> MembershipResponse:
    """Issue a one-time invite code with the given permissions."""
    membership = await circle.create_invite(
        db,
        account,
        view_glucose=body.view_glucose,
        receive_low_alerts=body.receive_low_alerts,
        receive_high_alerts=body.receive_high_alerts,
    )
    return MembershipResponse.from_membership(membership)


@router.post("/join", response_model=MembershipResponse)
@limiter.limit("10/minute")
async def join(
    request: Request,
    body: JoinCircleRequest,
    account: MemberAccount,
    db: AsyncSession = Depends(get_db),
) -> MembershipResponse:
    membership = await circle.join_circle(db, account, body.code)
    return MembershipResponse.from_membership(membership)


@router.get("", response_model=CircleResponse)
async def get_circle(
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> CircleResponse:
    """Owners see every seat including pending invites; members see their own."""
    if account.is_primary:
        memberships = await circle.list_circle(db, account.id)
    else:
        membership = await circle.get_membership_for_member(db, account.id)
        if membership is None:
            raise NotFound("You are not part of a care circle")
        memberships = [membership]
    return CircleResponse(
        members=[MembershipResponse.from_membership(m) for m in memberships],
        count=len(memberships),
    )


@router.patch("/members/{membership_id}", response_model=MembershipResponse)
async def update_member(
    membership_id: uuid.UUID,
    body: MembershipUpdate,
    account: PrimaryAccount,
    db: AsyncSession = Depends(get_db),
) -> MembershipResponse:
    """Change a member's permissions or pause them."""
    updates = body.model_dump(exclude_unset=True)
    new_status = updates.pop("status", None)
    membership = await circle.update_membership(
        db, account, membership_id, status=new_status, **updates
    )
    return MembershipResponse.from_membership(membership)


@router.delete("/members/{membership_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    membership_id: uuid.UUID,
    account: CurrentAccount,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Remove a member (owner) or leave the circle (member)."""
    await circle.remove_membership(db, account, membership_id)
