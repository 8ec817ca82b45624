"""Care-circle service.

Invite-code redemption, member permissions, pause and removal, and the
roster queries the dispatcher and authorization checks rely on.
"""

import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linkloop.core.errors import NotAuthorized, NotFound, ValidationError
from linkloop.logging_config import get_logger
from linkloop.models.account import Account, AccountRole
from linkloop.models.circle import CircleMembership, MembershipStatus

logger = get_logger(__name__)

MAX_PENDING_INVITES = 10
INVITE_CODE_ATTEMPTS = 5

PERMISSION_FIELDS = ("view_glucose", "receive_low_alerts", "receive_high_alerts")


def generate_invite_code() -> str:
    """Eight uppercase hex characters."""
    return secrets.token_hex(4).upper()


def owner_lock_statement(owner_id: uuid.UUID) -> Select:
    return select(Account.id).where(Account.id == owner_id).with_for_update()


def pending_invite_count_statement(owner_id: uuid.UUID) -> Select:
    return (
        select(func.count())
        .select_from(CircleMembership)
        .where(
            and_(
                CircleMembership.owner_id == owner_id,
                CircleMembership.status == MembershipStatus.PENDING,
            )
        )
    )


async def create_invite(
    db: AsyncSession,
    owner: Account,
    view_glucose: bool = True,
    receive_low_alerts: bool = True,
    receive_high_alerts: bool = False,
) -> CircleMembership:
    """Create a pending membership with a one-time invite code.

    Raises:
        NotAuthorized: If the owner is not a primary account
        ValidationError: If too many invites are pending
    """
    if not owner.is_primary:
        raise NotAuthorized("Only primary accounts can invite circle members")

    # Row lock on the owner serializes concurrent invites; PostgreSQL
    # refuses FOR UPDATE on the aggregate itself
    await db.execute(owner_lock_statement(owner.id))
    result = await db.execute(pending_invite_count_statement(owner.id))
    if result.scalar_one() >= MAX_PENDING_INVITES:
        raise ValidationError(
            f"Maximum of {MAX_PENDING_INVITES} pending invites allowed"
        )

    for _ in range(INVITE_CODE_ATTEMPTS):
        membership = CircleMembership(
            owner_id=owner.id,
            invite_code=generate_invite_code(),
            status=MembershipStatus.PENDING,
            view_glucose=view_glucose,
            receive_low_alerts=receive_low_alerts,
            receive_high_alerts=receive_high_alerts,
        )
        db.add(membership)
        try:
            await db.commit()
        except IntegrityError:
            # Code collision
            await db.rollback()
            continue
        await db.refresh(membership)
        logger.info(
            "Circle invite created",
            owner_id=str(owner.id),
            membership_id=str(membership.id),
        )
        return membership

    raise ValidationError("Could not generate a unique invite code, try again")


async def join_circle(db: AsyncSession, member: Account, code: str) -> CircleMembership:
    """Redeem an invite code and activate the membership.

    The code is cleared on redemption, so it can never be reused.

    Raises:
        NotAuthorized: If the caller is not a member account
        ValidationError: If the member already belongs to a circle
        NotFound: If the code does not match a pending invite
    """
    if member.role != AccountRole.MEMBER:
        raise NotAuthorized("Only member accounts can join a care circle")

    if member.linked_owner_id is not None or await get_membership_for_member(
        db, member.id
    ):
        raise ValidationError("You are already part of a care circle")

    result = await db.execute(
        select(CircleMembership)
        .where(
            CircleMembership.invite_code == code.strip().upper(),
            CircleMembership.status == MembershipStatus.PENDING,
        )
        .with_for_update()
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise NotFound("Invalid or already used invite code")

    membership.member_id = member.id
    membership.status = MembershipStatus.ACTIVE
    membership.invite_code = None
    membership.joined_at = datetime.now(timezone.utc)
    member.linked_owner_id = membership.owner_id
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ValidationError("You are already part of a care circle") from e
    await db.refresh(membership)

    logger.info(
        "Member joined circle",
        owner_id=str(membership.owner_id),
        member_id=str(member.id),
    )
    return membership


async def list_circle(db: AsyncSession, owner_id: uuid.UUID) -> list[CircleMembership]:
    """Every membership of the owner's circle, including pending invites."""
    result = await db.execute(
        select(CircleMembership)
        .where(CircleMembership.owner_id == owner_id)
        .order_by(CircleMembership.created_at.asc())
    )
    return list(result.scalars().all())


async def get_membership_for_member(
    db: AsyncSession, member_id: uuid.UUID
) -> CircleMembership | None:
    result = await db.execute(
        select(CircleMembership).where(CircleMembership.member_id == member_id)
    )
    return result.scalar_one_or_none()


async def is_active_member(
    db: AsyncSession, owner_id: uuid.UUID, member_id: uuid.UUID
) -> bool:
    result = await db.execute(
        select(CircleMembership.id).where(
            CircleMembership.owner_id == owner_id,
            CircleMembership.member_id == member_id,
            CircleMembership.status == MembershipStatus.ACTIVE,
        )
    )
    return result.first() is not None


async def _get_owned_membership(
    db: AsyncSession, owner_id: uuid.UUID, membership_id: uuid.UUID
) -> CircleMembership:
    result = await db.execute(
        select(CircleMembership).where(
            CircleMembership.id == membership_id,
            CircleMembership.owner_id == owner_id,
        )
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise NotFound("Circle member not found")
    return membership


async def update_membership(
    db: AsyncSession,
    owner: Account,
    membership_id: uuid.UUID,
    status: MembershipStatus | None = None,
    **permissions: bool,
) -> CircleMembership:
    """Change a member's permissions or pause/unpause them.

    Raises:
        NotFound: If the membership is not in the owner's circle
        ValidationError: For a pending invite status change or unknown field
    """
    membership = await _get_owned_membership(db, owner.id, membership_id)

    unknown = set(permissions) - set(PERMISSION_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown permission(s): {', '.join(sorted(unknown))}")

    if status is not None:
        if membership.status == MembershipStatus.PENDING or status == MembershipStatus.PENDING:
            raise ValidationError("Pending invites cannot change status")
        membership.status = status

    for name, value in permissions.items():
        if value is not None:
            setattr(membership, name, value)

    await db.commit()
    await db.refresh(membership)

    logger.info(
        "Circle membership updated",
        owner_id=str(owner.id),
        membership_id=str(membership_id),
        status=membership.status.value,
    )
    return membership


async def remove_membership(
    db: AsyncSession, actor: Account, membership_id: uuid.UUID
) -> None:
    """Remove a member (owner) or leave the circle (the member themself).

    Visibility is revoked immediately; rejoining needs a new code.

    Raises:
        NotFound: If the membership does not exist or is not the actor's
    """
    membership = await db.get(CircleMembership, membership_id)
    if membership is None or actor.id not in (membership.owner_id, membership.member_id):
        raise NotFound("Circle member not found")

    if membership.member_id is not None:
        member = await db.get(Account, membership.member_id)
        if member is not None and member.linked_owner_id == membership.owner_id:
            member.linked_owner_id = None

    await db.delete(membership)
    await db.commit()

    logger.info(
        "Circle membership removed",
        owner_id=str(membership.owner_id),
        membership_id=str(membership_id),
        removed_by=str(actor.id),
    )


async def resolve_owner_scope(
    db: AsyncSession, account: Account, require_view_glucose: bool = False
) -> uuid.UUID:
    """The primary account whose data the caller acts on.

    Primary accounts act on themselves; members on the owner of their
    active membership.

    Raises:
        NotAuthorized: If a member has no active membership, or lacks
            view_glucose when it is required
    """
    if account.is_primary:
        return account.id

    membership = await get_membership_for_member(db, account.id)
    if membership is None or membership.status != MembershipStatus.ACTIVE:
        raise NotAuthorized("You are not an active member of a care circle")
    if require_view_glucose and not membership.view_glucose:
        raise NotAuthorized("You do not have permission to view glucose data")
    return membership.owner_id
