"""Invitation resolution workflow.

Accepting an invitation is a short saga:

1. load_invite: read the invite (nothing to undo)
2. create_membership: the user joins the workspace with the invite's role
3. join_invite_group: the user joins the invite's group, if it names one
4. consume_invite: the invite is deleted; this commits the acceptance

A membership that already exists is treated as success, not as a
failure: the user may already belong to the workspace, or a concurrent
accept of the same invite may have got there first. Rows found that way
are left alone by rollback, which only removes what this run created.
Because a concurrent run may still roll back a row this run reused,
consume_invite re-reads both grants first and fails, keeping the invite,
if either is gone.

Rejecting is a single consume_invite step and never grants anything.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from src.tenancy.errors import (
    ConflictError,
    InvalidInputError,
    InvitationFailedError,
    InvitationFailedUncleanError,
    NotFoundError,
    SagaFailedError,
)
from src.tenancy.gateway.base import ResourceGateway, Row, UniqueViolationError
from src.tenancy.models import EntityKind, InvitationSummary, Invite, Membership
from src.tenancy.saga import SagaContext, SagaEngine, SagaEntry, Step, validate_step_order


logger = logging.getLogger(__name__)

SAGA_NAME = "resolve_invitation"
INITIAL_KEYS = ("invite_id", "user_id")


class InvitationResolutionWorkflow:
    """Accepts or rejects a pending workspace invitation.

    Attributes:
        gateway: Store the rows are read from and written to.
        engine: Saga engine running the steps.
        accept_steps: Steps run on acceptance.
        reject_steps: Steps run on rejection.
    """

    def __init__(self, gateway: ResourceGateway, engine: Optional[SagaEngine] = None):
        self.gateway = gateway
        self.engine = engine or SagaEngine(SAGA_NAME)
        self.accept_steps: List[SagaEntry] = [
            Step(
                name="load_invite",
                execute=self._load_invite,
                requires=("invite_id",),
                provides=("invite",),
            ),
            Step(
                name="create_membership",
                execute=self._create_membership,
                compensate=self._remove_membership,
                requires=("invite", "user_id"),
                provides=("membership", "membership_created"),
            ),
            Step(
                name="join_invite_group",
                execute=self._join_invite_group,
                compensate=self._leave_invite_group,
                requires=("invite", "user_id"),
                provides=("group_membership_id", "group_membership_created"),
            ),
            Step(
                name="consume_invite",
                execute=self._consume_accepted_invite,
                requires=("invite_id", "membership", "group_membership_id"),
            ),
        ]
        self.reject_steps: List[SagaEntry] = [
            Step(
                name="consume_invite",
                execute=self._consume_rejected_invite,
                requires=("invite_id",),
            ),
        ]
        validate_step_order(self.accept_steps, INITIAL_KEYS)
        validate_step_order(self.reject_steps, INITIAL_KEYS)

    async def resolve(
        self,
        invite_id: str,
        user_id: str,
        accept: bool,
    ) -> Optional[Membership]:
        """Accept or reject an invitation on behalf of a user.

        Args:
            invite_id: The invitation to resolve.
            user_id: The invitee.
            accept: True to join the workspace, False to decline.

        Returns:
            The user's membership when accepted, None when rejected.

        Raises:
            InvalidInputError: If invite_id or user_id is empty, or the store
                rejects one of them.
            NotFoundError: If the invitation does not exist (or was already
                rejected).
            InvitationFailedError: A step failed; nothing was kept.
            InvitationFailedUncleanError: A step failed and manual cleanup is
                required for the steps listed on the error.
        """
        if not invite_id or not invite_id.strip():
            raise InvalidInputError("invite_id", "Invitation id must not be empty")
        if not user_id or not user_id.strip():
            raise InvalidInputError("user_id", "User id must not be empty")

        steps = self.accept_steps if accept else self.reject_steps
        logger.info(
            "Resolving invitation",
            extra={"invite_id": invite_id, "user_id": user_id, "accept": accept},
        )

        try:
            context = await self.engine.run(steps, {"invite_id": invite_id, "user_id": user_id})
        except SagaFailedError as e:
            if e.is_clean and isinstance(e.cause, NotFoundError) and self._is_lookup(e.step, accept):
                raise NotFoundError(
                    EntityKind.INVITES.value,
                    invite_id,
                    f"Invitation {invite_id} not found",
                ) from e
            if e.is_clean and isinstance(e.cause, InvalidInputError):
                raise InvalidInputError(e.cause.field, e.cause.message) from e
            if e.is_clean:
                raise InvitationFailedError.from_saga_failure(
                    e,
                    f"Invitation could not be resolved, nothing was kept "
                    f"(step {e.step} failed: {e.cause})",
                ) from e
            raise InvitationFailedUncleanError.from_saga_failure(
                e,
                f"Invitation could not be resolved and manual cleanup is required "
                f"for: {', '.join(e.unrecovered_steps)} (step {e.step} failed: {e.cause})",
            ) from e

        if not accept:
            logger.info("Invitation rejected", extra={"invite_id": invite_id})
            return None

        membership: Membership = context["membership"]
        logger.info(
            "Invitation accepted",
            extra={
                "invite_id": invite_id,
                "workspace_id": membership.workspace_id,
                "membership_id": membership.id,
                "already_member": not context["membership_created"],
            },
        )
        return membership

    async def list_invitations(self, email: str) -> List[InvitationSummary]:
        """Pending invitations for an email, with workspace and group names."""
        email = (email or "").strip()
        if not email:
            raise InvalidInputError("email", "Email must not be empty")

        rows = await self.gateway.find(EntityKind.INVITES, {"email": email})
        workspace_names: Dict[str, str] = {}
        group_names: Dict[str, str] = {}
        summaries = []
        for row in rows:
            invite = Invite.from_row(row)
            if invite.workspace_id not in workspace_names:
                workspace = await self.gateway.get(
                    EntityKind.WORKSPACES, {"id": invite.workspace_id}
                )
                workspace_names[invite.workspace_id] = workspace["name"]
            group_name = None
            if invite.group_id is not None:
                if invite.group_id not in group_names:
                    group = await self.gateway.get(EntityKind.GROUPS, {"id": invite.group_id})
                    group_names[invite.group_id] = group["name"]
                group_name = group_names[invite.group_id]
            summaries.append(
                InvitationSummary(
                    id=invite.id,
                    workspace_id=invite.workspace_id,
                    workspace_name=workspace_names[invite.workspace_id],
                    role=invite.role,
                    group_name=group_name,
                )
            )
        return summaries

    @staticmethod
    def _is_lookup(step: str, accept: bool) -> bool:
        return step == "load_invite" or (not accept and step == "consume_invite")

    # Steps

    async def _load_invite(self, context: SagaContext) -> Dict[str, Any]:
        row = await self.gateway.get(EntityKind.INVITES, {"id": context["invite_id"]})
        return {"invite": Invite.from_row(row)}

    async def _create_membership(self, context: SagaContext) -> Dict[str, Any]:
        invite: Invite = context["invite"]
        row, created = await self._insert_or_existing(
            EntityKind.MEMBERSHIPS,
            {
                "workspace_id": invite.workspace_id,
                "user_id": context["user_id"],
                "role": invite.role.value,
            },
            unique_on=("workspace_id", "user_id"),
        )
        return {"membership": Membership.from_row(row), "membership_created": created}

    async def _remove_membership(self, context: SagaContext) -> None:
        if context["membership_created"]:
            await self.gateway.delete(EntityKind.MEMBERSHIPS, context["membership"].id)

    async def _join_invite_group(self, context: SagaContext) -> Dict[str, Any]:
        invite: Invite = context["invite"]
        if invite.group_id is None:
            return {"group_membership_id": None, "group_membership_created": False}

        row, created = await self._insert_or_existing(
            EntityKind.GROUP_MEMBERSHIPS,
            {"group_id": invite.group_id, "user_id": context["user_id"]},
            unique_on=("group_id", "user_id"),
        )
        return {"group_membership_id": row["id"], "group_membership_created": created}

    async def _leave_invite_group(self, context: SagaContext) -> None:
        if context["group_membership_created"]:
            await self.gateway.delete(
                EntityKind.GROUP_MEMBERSHIPS, context["group_membership_id"]
            )

    async def _consume_accepted_invite(self, context: SagaContext) -> Dict[str, Any]:
        # Reused rows may since have been removed by a concurrent rollback
        await self._require_row(EntityKind.MEMBERSHIPS, context["membership"].id)
        if context["group_membership_id"] is not None:
            await self._require_row(
                EntityKind.GROUP_MEMBERSHIPS, context["group_membership_id"]
            )
        # A concurrent accept may already have deleted it
        await self.gateway.delete(EntityKind.INVITES, context["invite_id"])
        return {}

    async def _require_row(self, kind: EntityKind, row_id: str) -> None:
        if not await self.gateway.find(kind, {"id": row_id}):
            raise ConflictError(
                f"{kind.value} row {row_id} was removed by a concurrent rollback"
            )

    async def _consume_rejected_invite(self, context: SagaContext) -> Dict[str, Any]:
        deleted = await self.gateway.delete(EntityKind.INVITES, context["invite_id"])
        if not deleted:
            raise NotFoundError(EntityKind.INVITES.value, context["invite_id"])
        return {}

    async def _insert_or_existing(
        self,
        kind: EntityKind,
        fields: Row,
        unique_on: Tuple[str, ...],
    ) -> Tuple[Row, bool]:
        """Insert a row, or return the row that already holds its unique key.

        Returns:
            The row and whether this call created it.
        """
        try:
            row_id = await self.gateway.insert(kind, fields)
        except UniqueViolationError:
            existing = await self.gateway.get(
                kind, {column: fields[column] for column in unique_on}
            )
            logger.info(
                "Row already exists; reusing it",
                extra={"kind": kind.value, "row_id": existing["id"]},
            )
            return existing, False
        return {**fields, "id": row_id}, True
