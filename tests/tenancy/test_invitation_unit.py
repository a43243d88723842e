"""Unit tests for the invitation resolution workflow.

Tests accepting with and without a group, rejecting, concurrent double
accept, not-found handling, rollback and listing invitations.
"""

import asyncio

import pytest

from src.tenancy.errors import (
    ConflictError,
    InvalidInputError,
    InvitationFailedError,
    InvitationFailedUncleanError,
    NotFoundError,
)
from src.tenancy.models import EntityKind, Membership, MembershipRole
from src.tenancy.workflows.invitation import InvitationResolutionWorkflow
from tests.tenancy.doubles import FaultInjectingGateway, run_async


@pytest.fixture
def gateway():
    return FaultInjectingGateway()


@pytest.fixture
def workflow(gateway):
    return InvitationResolutionWorkflow(gateway)


@pytest.fixture
def workspace_id(gateway):
    return run_async(
        gateway.inner.insert(EntityKind.WORKSPACES, {"name": "Acme", "owner_id": "owner"})
    )


@pytest.fixture
def support_group_id(gateway, workspace_id):
    return run_async(
        gateway.inner.insert(EntityKind.GROUPS, {"workspace_id": workspace_id, "name": "Support"})
    )


def make_invite(gateway, workspace_id, group_id=None, role="member", email="new@acme.test"):
    return run_async(
        gateway.inner.insert(
            EntityKind.INVITES,
            {"workspace_id": workspace_id, "email": email, "role": role, "group_id": group_id},
        )
    )


def rows(gateway, kind, **filters):
    return run_async(gateway.inner.find(kind, filters))


class TestAccept:

    def test_accept_with_group(self, gateway, workflow, workspace_id, support_group_id):
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        membership = run_async(workflow.resolve(invite_id, "user-2", accept=True))

        assert isinstance(membership, Membership)
        assert membership.workspace_id == workspace_id
        assert membership.user_id == "user-2"
        assert membership.role == MembershipRole.MEMBER
        assert len(rows(gateway, EntityKind.MEMBERSHIPS, user_id="user-2")) == 1
        group_members = rows(gateway, EntityKind.GROUP_MEMBERSHIPS, group_id=support_group_id)
        assert [m["user_id"] for m in group_members] == ["user-2"]
        assert gateway.count(EntityKind.INVITES) == 0

    def test_accept_without_group(self, gateway, workflow, workspace_id):
        invite_id = make_invite(gateway, workspace_id, role="admin")

        membership = run_async(workflow.resolve(invite_id, "user-2", accept=True))

        assert membership.role == MembershipRole.ADMIN
        assert gateway.count(EntityKind.GROUP_MEMBERSHIPS) == 0
        assert gateway.count(EntityKind.INVITES) == 0

    def test_existing_member_accepting_is_success(self, gateway, workflow, workspace_id):
        existing_id = run_async(
            gateway.inner.insert(
                EntityKind.MEMBERSHIPS,
                {"workspace_id": workspace_id, "user_id": "user-2", "role": "admin"},
            )
        )
        invite_id = make_invite(gateway, workspace_id)

        membership = run_async(workflow.resolve(invite_id, "user-2", accept=True))

        assert membership.id == existing_id
        assert membership.role == MembershipRole.ADMIN
        assert gateway.count(EntityKind.MEMBERSHIPS) == 1
        assert gateway.count(EntityKind.INVITES) == 0

    def test_concurrent_double_accept(self, gateway, workflow, workspace_id, support_group_id):
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        async def scenario():
            return await asyncio.gather(
                workflow.resolve(invite_id, "user-2", accept=True),
                workflow.resolve(invite_id, "user-2", accept=True),
            )

        first, second = run_async(scenario())

        assert first.id == second.id
        assert gateway.count(EntityKind.MEMBERSHIPS) == 1
        assert gateway.count(EntityKind.GROUP_MEMBERSHIPS) == 1
        assert gateway.count(EntityKind.INVITES) == 0

    def test_missing_invite_is_not_found(self, gateway, workflow):
        with pytest.raises(NotFoundError) as exc_info:
            run_async(workflow.resolve("no-such-invite", "user-2", accept=True))

        assert not isinstance(exc_info.value, InvitationFailedError)
        assert exc_info.value.key == "no-such-invite"
        assert gateway.count(EntityKind.MEMBERSHIPS) == 0


class TestAcceptRollback:

    def test_group_failure_removes_created_membership(
        self, gateway, workflow, workspace_id, support_group_id
    ):
        gateway.fail_on("insert", EntityKind.GROUP_MEMBERSHIPS)
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        with pytest.raises(InvitationFailedError) as exc_info:
            run_async(workflow.resolve(invite_id, "user-2", accept=True))

        assert exc_info.value.step == "join_invite_group"
        assert gateway.count(EntityKind.MEMBERSHIPS) == 0
        # The invite stays so the user can try again
        assert gateway.count(EntityKind.INVITES) == 1

    def test_rollback_keeps_membership_it_did_not_create(
        self, gateway, workflow, workspace_id, support_group_id
    ):
        run_async(
            gateway.inner.insert(
                EntityKind.MEMBERSHIPS,
                {"workspace_id": workspace_id, "user_id": "user-2", "role": "member"},
            )
        )
        gateway.fail_on("delete", EntityKind.INVITES)
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        with pytest.raises(InvitationFailedError) as exc_info:
            run_async(workflow.resolve(invite_id, "user-2", accept=True))

        assert exc_info.value.step == "consume_invite"
        assert gateway.count(EntityKind.MEMBERSHIPS) == 1
        assert gateway.count(EntityKind.GROUP_MEMBERSHIPS) == 0

    def test_failed_rollback_is_unclean(self, gateway, workflow, workspace_id, support_group_id):
        gateway.fail_on("insert", EntityKind.GROUP_MEMBERSHIPS)
        gateway.fail_on("delete", EntityKind.MEMBERSHIPS)
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        with pytest.raises(InvitationFailedUncleanError) as exc_info:
            run_async(workflow.resolve(invite_id, "user-2", accept=True))

        assert not isinstance(exc_info.value, InvitationFailedError)
        assert exc_info.value.unrecovered_steps == ["create_membership"]

    def test_reused_membership_removed_before_commit_keeps_invite(
        self, gateway, workflow, workspace_id, support_group_id
    ):
        other_accept_row = run_async(
            gateway.inner.insert(
                EntityKind.MEMBERSHIPS,
                {"workspace_id": workspace_id, "user_id": "user-2", "role": "member"},
            )
        )
        gateway.fail_on("insert", EntityKind.GROUP_MEMBERSHIPS, delay=0.02)
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        async def scenario():
            accept = asyncio.ensure_future(workflow.resolve(invite_id, "user-2", accept=True))
            await asyncio.sleep(0.01)
            # The concurrent accept that created the row rolls back
            await gateway.inner.delete(EntityKind.MEMBERSHIPS, other_accept_row)
            return await accept

        with pytest.raises(InvitationFailedError) as exc_info:
            run_async(scenario())

        assert exc_info.value.step == "consume_invite"
        assert isinstance(exc_info.value.cause, ConflictError)
        assert gateway.count(EntityKind.INVITES) == 1
        assert gateway.count(EntityKind.GROUP_MEMBERSHIPS) == 0

    def test_concurrent_accept_rollback_never_strands_consumed_invite(
        self, gateway, workflow, workspace_id, support_group_id
    ):
        gateway.fail_on("insert", EntityKind.GROUP_MEMBERSHIPS, times=1)
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        async def scenario():
            return await asyncio.gather(
                workflow.resolve(invite_id, "user-2", accept=True),
                workflow.resolve(invite_id, "user-2", accept=True),
                return_exceptions=True,
            )

        results = run_async(scenario())

        assert any(isinstance(r, InvitationFailedError) for r in results)
        membership_ids = {m["id"] for m in rows(gateway, EntityKind.MEMBERSHIPS)}
        for result in results:
            if isinstance(result, Membership):
                assert result.id in membership_ids
        if gateway.count(EntityKind.INVITES) == 0:
            assert gateway.count(EntityKind.MEMBERSHIPS) == 1
        else:
            # Nothing was granted, so the invite can still be accepted
            membership = run_async(workflow.resolve(invite_id, "user-2", accept=True))
            assert membership.id in {m["id"] for m in rows(gateway, EntityKind.MEMBERSHIPS)}
            assert gateway.count(EntityKind.INVITES) == 0


class TestReject:

    def test_reject_deletes_invite_without_grants(
        self, gateway, workflow, workspace_id, support_group_id
    ):
        invite_id = make_invite(gateway, workspace_id, support_group_id)

        result = run_async(workflow.resolve(invite_id, "user-2", accept=False))

        assert result is None
        assert gateway.count(EntityKind.INVITES) == 0
        assert gateway.count(EntityKind.MEMBERSHIPS) == 0
        assert gateway.count(EntityKind.GROUP_MEMBERSHIPS) == 0
        assert not any(op.startswith("insert") for op, _ in gateway.calls)

    def test_reject_missing_invite_is_not_found(self, workflow):
        with pytest.raises(NotFoundError):
            run_async(workflow.resolve("no-such-invite", "user-2", accept=False))

    def test_reject_twice_is_not_found(self, gateway, workflow, workspace_id):
        invite_id = make_invite(gateway, workspace_id)
        run_async(workflow.resolve(invite_id, "user-2", accept=False))

        with pytest.raises(NotFoundError):
            run_async(workflow.resolve(invite_id, "user-2", accept=False))


class TestValidation:

    @pytest.mark.parametrize("invite_id,user_id,field", [
        ("", "user-2", "invite_id"),
        ("invite-1", "", "user_id"),
        ("invite-1", "  ", "user_id"),
    ])
    def test_empty_inputs_rejected(self, gateway, workflow, invite_id, user_id, field):
        with pytest.raises(InvalidInputError) as exc_info:
            run_async(workflow.resolve(invite_id, user_id, accept=True))
        assert exc_info.value.field == field
        assert gateway.calls == []


class TestListInvitations:

    def test_lists_with_workspace_and_group_names(
        self, gateway, workflow, workspace_id, support_group_id
    ):
        make_invite(gateway, workspace_id, support_group_id, email="new@acme.test")
        make_invite(gateway, workspace_id, email="new@acme.test", role="admin")
        make_invite(gateway, workspace_id, email="other@acme.test")

        summaries = run_async(workflow.list_invitations("new@acme.test"))

        assert len(summaries) == 2
        assert {s.workspace_name for s in summaries} == {"Acme"}
        by_role = {s.role: s for s in summaries}
        assert by_role[MembershipRole.MEMBER].group_name == "Support"
        assert by_role[MembershipRole.ADMIN].group_name is None

    def test_no_invitations(self, workflow):
        assert run_async(workflow.list_invitations("nobody@acme.test")) == []

    def test_empty_email_rejected(self, workflow):
        with pytest.raises(InvalidInputError):
            run_async(workflow.list_invitations(" "))
