"""Tests for the care-circle service."""

import uuid

import pytest
from sqlalchemy.dialects import postgresql

from linkloop.core.errors import NotAuthorized, NotFound, ValidationError
from linkloop.models.account import AccountRole
from linkloop.models.circle import MembershipStatus
from linkloop.services import circle


class TestInviteCode:
    def test_format(self):
        code = circle.generate_invite_code()
        assert len(code) == 8
        assert code == code.upper()
        int(code, 16)

    def test_codes_differ(self):
        assert len({circle.generate_invite_code() for _ in range(20)}) == 20


class TestInviteStatementsOnPostgres:
    """PostgreSQL rejects FOR UPDATE combined with an aggregate."""

    def compile(self, statement):
        return str(statement.compile(dialect=postgresql.dialect()))

    def test_owner_row_is_locked(self):
        sql = self.compile(circle.owner_lock_statement(uuid.uuid4()))

        assert "FROM accounts" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    def test_pending_count_is_not_locked(self):
        sql = self.compile(circle.pending_invite_count_statement(uuid.uuid4()))

        assert "count(*)" in sql
        assert "FOR UPDATE" not in sql


# ---------------------------------------------------------------------------
# Invites and joining
# ---------------------------------------------------------------------------
class TestInvites:
    async def test_create_invite(self, db_session, owner):
        invite = await circle.create_invite(db_session, owner, receive_high_alerts=True)

        assert invite.status == MembershipStatus.PENDING
        assert invite.member_id is None
        assert len(invite.invite_code) == 8
        assert invite.receive_high_alerts is True

    async def test_member_cannot_invite(self, db_session, member):
        with pytest.raises(NotAuthorized):
            await circle.create_invite(db_session, member)

    async def test_pending_invite_limit(self, db_session, owner):
        for _ in range(circle.MAX_PENDING_INVITES):
            await circle.create_invite(db_session, owner)
        with pytest.raises(ValidationError):
            await circle.create_invite(db_session, owner)

    async def test_join(self, db_session, owner, member):
        invite = await circle.create_invite(db_session, owner)

        membership = await circle.join_circle(db_session, member, invite.invite_code.lower())

        assert membership.status == MembershipStatus.ACTIVE
        assert membership.member_id == member.id
        assert membership.invite_code is None
        assert membership.joined_at is not None
        assert member.linked_owner_id == owner.id

    async def test_code_is_single_use(self, db_session, owner, member, make_account):
        invite = await circle.create_invite(db_session, owner)
        code = invite.invite_code
        await circle.join_circle(db_session, member, code)

        other = await make_account(AccountRole.MEMBER, "Jordan")
        with pytest.raises(NotFound):
            await circle.join_circle(db_session, other, code)

    async def test_unknown_code(self, db_session, member):
        with pytest.raises(NotFound):
            await circle.join_circle(db_session, member, "DEADBEEF")

    async def test_primary_cannot_join(self, db_session, owner, make_account):
        other_owner = await make_account(name="Robin")
        invite = await circle.create_invite(db_session, owner)
        with pytest.raises(NotAuthorized):
            await circle.join_circle(db_session, other_owner, invite.invite_code)

    async def test_member_joins_one_circle_only(self, db_session, owner, member, make_account):
        second_owner = await make_account(name="Robin")
        first = await circle.create_invite(db_session, owner)
        second = await circle.create_invite(db_session, second_owner)
        await circle.join_circle(db_session, member, first.invite_code)

        with pytest.raises(ValidationError):
            await circle.join_circle(db_session, member, second.invite_code)


# ---------------------------------------------------------------------------
# Roster and membership changes
# ---------------------------------------------------------------------------
class TestMemberships:
    async def test_list_includes_pending(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        await circle.create_invite(db_session, owner)

        roster = await circle.list_circle(db_session, owner.id)
        assert sorted(m.status for m in roster) == [
            MembershipStatus.ACTIVE,
            MembershipStatus.PENDING,
        ]

    async def test_is_active_member(self, db_session, owner, member, add_member):
        assert not await circle.is_active_member(db_session, owner.id, member.id)
        await add_member(owner, member)
        assert await circle.is_active_member(db_session, owner.id, member.id)

    async def test_update_permissions(self, db_session, owner, member, add_member):
        membership = await add_member(owner, member)

        updated = await circle.update_membership(
            db_session, owner, membership.id, view_glucose=False, receive_high_alerts=None
        )
        assert updated.view_glucose is False
        assert updated.receive_high_alerts is True

    async def test_pause_membership(self, db_session, owner, member, add_member):
        membership = await add_member(owner, member)

        updated = await circle.update_membership(
            db_session, owner, membership.id, status=MembershipStatus.PAUSED
        )
        assert updated.status == MembershipStatus.PAUSED
        assert not await circle.is_active_member(db_session, owner.id, member.id)

    async def test_pending_invite_status_is_fixed(self, db_session, owner):
        invite = await circle.create_invite(db_session, owner)
        with pytest.raises(ValidationError):
            await circle.update_membership(
                db_session, owner, invite.id, status=MembershipStatus.ACTIVE
            )

    async def test_unknown_permission(self, db_session, owner, member, add_member):
        membership = await add_member(owner, member)
        with pytest.raises(ValidationError):
            await circle.update_membership(db_session, owner, membership.id, admin=True)

    async def test_update_other_owners_membership(self, db_session, owner, member, make_account, add_member):
        other_owner = await make_account(name="Robin")
        membership = await add_member(other_owner, member)
        with pytest.raises(NotFound):
            await circle.update_membership(db_session, owner, membership.id, view_glucose=False)

    async def test_owner_removes_member(self, db_session, owner, member, add_member):
        membership = await add_member(owner, member)

        await circle.remove_membership(db_session, owner, membership.id)

        assert await circle.list_circle(db_session, owner.id) == []
        await db_session.refresh(member)
        assert member.linked_owner_id is None

    async def test_member_leaves(self, db_session, owner, member, add_member):
        membership = await add_member(owner, member)
        await circle.remove_membership(db_session, member, membership.id)
        assert not await circle.is_active_member(db_session, owner.id, member.id)

    async def test_stranger_cannot_remove(self, db_session, owner, member, make_account, add_member):
        stranger = await make_account(AccountRole.MEMBER, "Jordan")
        membership = await add_member(owner, member)
        with pytest.raises(NotFound):
            await circle.remove_membership(db_session, stranger, membership.id)

    async def test_remove_unknown(self, db_session, owner):
        with pytest.raises(NotFound):
            await circle.remove_membership(db_session, owner, uuid.uuid4())


# ---------------------------------------------------------------------------
# Owner scope
# ---------------------------------------------------------------------------
class TestOwnerScope:
    async def test_primary_acts_on_itself(self, db_session, owner):
        assert await circle.resolve_owner_scope(db_session, owner) == owner.id

    async def test_member_acts_on_owner(self, db_session, owner, member, add_member):
        await add_member(owner, member)
        assert await circle.resolve_owner_scope(db_session, member) == owner.id

    async def test_member_without_circle(self, db_session, member):
        with pytest.raises(NotAuthorized):
            await circle.resolve_owner_scope(db_session, member)

    async def test_paused_member(self, db_session, owner, member, add_member):
        await add_member(owner, member, status=MembershipStatus.PAUSED)
        with pytest.raises(NotAuthorized):
            await circle.resolve_owner_scope(db_session, member)

    async def test_view_glucose_required(self, db_session, owner, member, add_member):
        await add_member(owner, member, view_glucose=False)
        assert await circle.resolve_owner_scope(db_session, member) == owner.id
        with pytest.raises(NotAuthorized):
            await circle.resolve_owner_scope(db_session, member, require_view_glucose=True)
