"""Caller-facing entry points for workspace tenancy.

TenancyService wires the gateway, the two saga workflows and the
idempotency guard together. The HTTP layer (main.py) is a thin adapter
over this class; anything that wants to provision workspaces in-process
uses it directly.

Inputs are validated before the guard is consulted, so a bad request
never occupies a request key.
"""

import asyncio
import logging
from typing import List, Optional

from src.tenancy.config import GatewayBackend, TenancySettings
from src.tenancy.errors import InvalidInputError
from src.tenancy.events.emitter import EventEmitter
from src.tenancy.gateway.base import ResourceGateway
from src.tenancy.gateway.memory import InMemoryResourceGateway
from src.tenancy.gateway.postgres import PostgresResourceGateway
from src.tenancy.gateway.rest import RestResourceGateway
from src.tenancy.idempotency import IdempotencyGuard, make_request_key
from src.tenancy.models import EntityKind, InvitationSummary, Membership, Workspace
from src.tenancy.saga import SagaEngine
from src.tenancy.workflows import invitation, provisioning
from src.tenancy.workflows.invitation import InvitationResolutionWorkflow
from src.tenancy.workflows.provisioning import WorkspaceProvisioningWorkflow


logger = logging.getLogger(__name__)


class TenancyService:
    """Provisions workspaces and resolves invitations, once per request.

    Attributes:
        gateway: Store shared by both workflows.
        provisioning: Workspace provisioning workflow.
        invitations: Invitation resolution workflow.
        guard: Deduplicates retried requests.
    """

    def __init__(
        self,
        gateway: ResourceGateway,
        guard: Optional[IdempotencyGuard] = None,
        event_emitter: Optional[EventEmitter] = None,
        step_timeout_seconds: float = 30.0,
    ):
        self.gateway = gateway
        self.guard = guard or IdempotencyGuard()
        self.provisioning = WorkspaceProvisioningWorkflow(
            gateway,
            SagaEngine(
                provisioning.SAGA_NAME,
                default_timeout_seconds=step_timeout_seconds,
                event_emitter=event_emitter,
            ),
        )
        self.invitations = InvitationResolutionWorkflow(
            gateway,
            SagaEngine(
                invitation.SAGA_NAME,
                default_timeout_seconds=step_timeout_seconds,
                event_emitter=event_emitter,
            ),
        )

    async def provision_workspace(
        self,
        name: str,
        owner_id: str,
        request_token: Optional[str] = None,
    ) -> Workspace:
        """Create a fully provisioned workspace owned by owner_id.

        Repeating the call with the same request_token and name returns the
        same workspace instead of creating another. Without a token every
        call provisions a new workspace.

        Raises:
            InvalidInputError: If name or owner_id is empty.
            ProvisioningFailedError: Nothing was kept.
            ProvisioningFailedUncleanError: Manual cleanup is required.
        """
        name = (name or "").strip()
        _require("name", name, "Workspace name must not be empty")
        _require("owner_id", owner_id, "Owner id must not be empty")

        if not request_token:
            return await self.provisioning.provision(name, owner_id)

        request_key = make_request_key(owner_id, "provision_workspace", request_token, name)
        return await self.guard.guard(
            request_key,
            lambda: self.provisioning.provision(name, owner_id, request_key),
        )

    async def resolve_invitation(
        self,
        invite_id: str,
        user_id: str,
        accept: bool,
        request_token: Optional[str] = None,
    ) -> Optional[Membership]:
        """Accept or reject an invitation.

        Returns:
            The membership when accepted, None when rejected.

        Raises:
            InvalidInputError: If invite_id or user_id is empty.
            NotFoundError: If the invitation does not exist.
            InvitationFailedError: Nothing was kept.
            InvitationFailedUncleanError: Manual cleanup is required.
        """
        _require("invite_id", invite_id, "Invitation id must not be empty")
        _require("user_id", user_id, "User id must not be empty")

        if not request_token:
            return await self.invitations.resolve(invite_id, user_id, accept)

        request_key = make_request_key(
            user_id, "resolve_invitation", request_token, invite_id, accept
        )
        return await self.guard.guard(
            request_key,
            lambda: self.invitations.resolve(invite_id, user_id, accept),
        )

    async def list_invitations(self, email: str) -> List[InvitationSummary]:
        """Pending invitations addressed to an email."""
        return await self.invitations.list_invitations(email)

    async def list_workspaces(self, user_id: str) -> List[Workspace]:
        """Workspaces the user is a member of."""
        _require("user_id", user_id, "User id must not be empty")
        memberships = await self.gateway.find(EntityKind.MEMBERSHIPS, {"user_id": user_id})
        rows = await asyncio.gather(
            *(
                self.gateway.find(EntityKind.WORKSPACES, {"id": m["workspace_id"]})
                for m in memberships
            )
        )
        return [Workspace.from_row(found[0]) for found in rows if found]

    async def health_check(self) -> bool:
        return await self.gateway.health_check()


def _require(field: str, value: Optional[str], message: str) -> None:
    if not value or not value.strip():
        raise InvalidInputError(field, message)


def create_gateway(settings: TenancySettings) -> ResourceGateway:
    """Build the gateway backend selected by settings."""
    if settings.gateway_backend == GatewayBackend.POSTGRES:
        return PostgresResourceGateway(
            settings.database_url,
            command_timeout=settings.request_timeout_seconds,
        )
    if settings.gateway_backend == GatewayBackend.MEMORY:
        logger.warning("Using in-memory gateway; all state is lost on restart")
        return InMemoryResourceGateway()
    return RestResourceGateway(
        settings.gateway_url,
        settings.gateway_api_key,
        timeout=settings.request_timeout_seconds,
        max_retries=settings.request_max_retries,
    )


def create_service(
    settings: TenancySettings,
    event_emitter: Optional[EventEmitter] = None,
    gateway: Optional[ResourceGateway] = None,
) -> TenancyService:
    """Build a TenancyService from settings."""
    return TenancyService(
        gateway if gateway is not None else create_gateway(settings),
        guard=IdempotencyGuard(
            retention_seconds=settings.idempotency_retention_seconds,
            max_entries=settings.idempotency_max_entries,
        ),
        event_emitter=event_emitter,
        step_timeout_seconds=settings.step_timeout_seconds,
    )
