"""Workspace provisioning workflow.

Creates a workspace and everything a usable workspace needs, as one saga:

 1. create_workspace
 2. create_owner_membership
 3. create_ticket_config
 4. create_default_groups
 5-9. seed_catalogs (concurrent): add_owner_to_management,
      create_default_types, create_default_topics, create_default_tags,
      create_default_resolutions
10. create_sample_ticket
11. create_sample_ticket_version
12. create_sample_macro

Every write after step 1 is scoped by the workspace id step 1 produced,
so concurrent provisioning runs never touch each other's rows. If any step
fails, every completed step is deleted again in reverse order and the
caller gets ProvisioningFailedError, or ProvisioningFailedUncleanError when
some of the rollback did not go through.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from src.tenancy.errors import (
    InvalidInputError,
    ProvisioningFailedError,
    ProvisioningFailedUncleanError,
    SagaFailedError,
)
from src.tenancy.gateway.base import ResourceGateway, UniqueViolationError
from src.tenancy.models import EntityKind, MembershipRole, Workspace
from src.tenancy.saga import (
    Compensation,
    ParallelSteps,
    SagaContext,
    SagaEngine,
    SagaEntry,
    Step,
    validate_step_order,
)
from src.tenancy.workflows import catalog


logger = logging.getLogger(__name__)

SAGA_NAME = "provision_workspace"
INITIAL_KEYS = ("workspace_name", "owner_id", "request_key")


class WorkspaceProvisioningWorkflow:
    """Provisions a fully configured workspace, or nothing at all.

    Attributes:
        gateway: Store the rows are written to.
        engine: Saga engine running the steps.
        steps: The step list, validated for dependency order on construction.
    """

    def __init__(self, gateway: ResourceGateway, engine: Optional[SagaEngine] = None):
        self.gateway = gateway
        self.engine = engine or SagaEngine(SAGA_NAME)
        self.steps: List[SagaEntry] = self._build_steps()
        validate_step_order(self.steps, INITIAL_KEYS)

    async def provision(
        self,
        name: str,
        owner_id: str,
        request_key: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Workspace:
        """Create a workspace with its default configuration.

        Args:
            name: Workspace display name.
            owner_id: User creating the workspace; becomes its owner.
            request_key: Idempotency key stored on the workspace row. A
                workspace already created by this owner with this key is
                returned as-is.
            cancel_event: Set it to stop the run between steps.

        Returns:
            The new (or previously created) workspace.

        Raises:
            InvalidInputError: If name or owner_id is empty, or the store
                rejects one of them. Nothing is kept.
            ProvisioningFailedError: A step failed; nothing was kept.
            ProvisioningFailedUncleanError: A step failed and manual cleanup
                is required for the steps listed on the error.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("name", "Workspace name must not be empty")
        if not owner_id or not owner_id.strip():
            raise InvalidInputError("owner_id", "Owner id must not be empty")

        if request_key:
            existing = await self._find_by_request_key(owner_id, request_key)
            if existing is not None:
                return existing

        logger.info(
            "Provisioning workspace",
            extra={"workspace_name": name, "owner_id": owner_id},
        )

        try:
            context = await self.engine.run(
                self.steps,
                {"workspace_name": name, "owner_id": owner_id, "request_key": request_key},
                cancel_event=cancel_event,
            )
        except SagaFailedError as e:
            if self._lost_request_key_race(e, request_key):
                # Another run with the same key created the workspace first
                existing = await self._find_by_request_key(owner_id, request_key)
                if existing is not None:
                    return existing
            if e.is_clean and isinstance(e.cause, InvalidInputError):
                raise InvalidInputError(e.cause.field, e.cause.message) from e
            if e.is_clean:
                raise ProvisioningFailedError.from_saga_failure(
                    e,
                    f"Workspace could not be created, nothing was kept "
                    f"(step {e.step} failed: {e.cause})",
                ) from e
            raise ProvisioningFailedUncleanError.from_saga_failure(
                e,
                f"Workspace could not be created and manual cleanup is required "
                f"for: {', '.join(e.unrecovered_steps)} (step {e.step} failed: {e.cause})",
            ) from e

        workspace = Workspace(id=context["workspace_id"], name=name, owner_id=owner_id)
        logger.info(
            "Workspace provisioned",
            extra={"workspace_id": workspace.id, "owner_id": owner_id},
        )
        return workspace

    async def _find_by_request_key(
        self, owner_id: str, request_key: str
    ) -> Optional[Workspace]:
        rows = await self.gateway.find(
            EntityKind.WORKSPACES,
            {"owner_id": owner_id, "request_key": request_key},
        )
        if not rows:
            return None
        logger.info(
            "Workspace already provisioned for request key",
            extra={"workspace_id": rows[0]["id"], "owner_id": owner_id},
        )
        return Workspace.from_row(rows[0])

    @staticmethod
    def _lost_request_key_race(error: SagaFailedError, request_key: Optional[str]) -> bool:
        return (
            bool(request_key)
            and error.is_clean
            and error.step == "create_workspace"
            and isinstance(error.cause, UniqueViolationError)
        )

    def _build_steps(self) -> List[SagaEntry]:
        return [
            Step(
                name="create_workspace",
                execute=self._create_workspace,
                compensate=self._delete_one(EntityKind.WORKSPACES, "workspace_id"),
                requires=("workspace_name", "owner_id", "request_key"),
                provides=("workspace_id",),
            ),
            Step(
                name="create_owner_membership",
                execute=self._create_owner_membership,
                compensate=self._delete_one(EntityKind.MEMBERSHIPS, "owner_membership_id"),
                requires=("workspace_id", "owner_id"),
                provides=("owner_membership_id",),
            ),
            Step(
                name="create_ticket_config",
                execute=self._create_ticket_config,
                compensate=self._delete_one(EntityKind.TICKET_CONFIGS, "ticket_config_id"),
                requires=("workspace_id",),
                provides=("ticket_config_id",),
            ),
            Step(
                name="create_default_groups",
                execute=self._create_default_groups,
                compensate=self._delete_batch(EntityKind.GROUPS, "group_ids"),
                requires=("workspace_id",),
                provides=("group_ids", "management_group_id"),
            ),
            ParallelSteps(
                name="seed_catalogs",
                steps=(
                    Step(
                        name="add_owner_to_management",
                        execute=self._add_owner_to_management,
                        compensate=self._delete_one(
                            EntityKind.GROUP_MEMBERSHIPS, "owner_group_membership_id"
                        ),
                        requires=("management_group_id", "owner_id"),
                        provides=("owner_group_membership_id",),
                    ),
                    Step(
                        name="create_default_types",
                        execute=self._create_default_types,
                        compensate=self._delete_batch(EntityKind.TICKET_TYPES, "type_ids"),
                        requires=("workspace_id",),
                        provides=("type_ids", "task_type_id"),
                    ),
                    Step(
                        name="create_default_topics",
                        execute=self._create_default_topics,
                        compensate=self._delete_batch(EntityKind.TICKET_TOPICS, "topic_ids"),
                        requires=("workspace_id",),
                        provides=("topic_ids", "technical_support_topic_id"),
                    ),
                    Step(
                        name="create_default_tags",
                        execute=self._create_default_tags,
                        compensate=self._delete_batch(EntityKind.TAGS, "tag_ids"),
                        requires=("workspace_id",),
                        provides=("tag_ids", "fy2025_tag_id"),
                    ),
                    Step(
                        name="create_default_resolutions",
                        execute=self._create_default_resolutions,
                        compensate=self._delete_batch(EntityKind.RESOLUTIONS, "resolution_ids"),
                        requires=("workspace_id",),
                        provides=("resolution_ids",),
                    ),
                ),
            ),
            Step(
                name="create_sample_ticket",
                execute=self._create_sample_ticket,
                compensate=self._delete_one(EntityKind.TICKETS, "sample_ticket_id"),
                requires=(
                    "workspace_id",
                    "owner_id",
                    "management_group_id",
                    "task_type_id",
                    "technical_support_topic_id",
                ),
                provides=("sample_ticket_id", "sample_ticket"),
            ),
            Step(
                name="create_sample_ticket_version",
                execute=self._create_sample_ticket_version,
                compensate=self._delete_one(
                    EntityKind.TICKET_VERSIONS, "sample_ticket_version_id"
                ),
                requires=("sample_ticket_id", "sample_ticket"),
                provides=("sample_ticket_version_id",),
            ),
            Step(
                name="create_sample_macro",
                execute=self._create_sample_macro,
                compensate=self._delete_one(EntityKind.MACROS, "sample_macro_id"),
                requires=(
                    "workspace_id",
                    "management_group_id",
                    "task_type_id",
                    "technical_support_topic_id",
                ),
                provides=("sample_macro_id",),
            ),
        ]

    # Steps

    async def _create_workspace(self, context: SagaContext) -> Dict[str, Any]:
        fields = {"name": context["workspace_name"], "owner_id": context["owner_id"]}
        if context["request_key"]:
            fields["request_key"] = context["request_key"]
        workspace_id = await self.gateway.insert(EntityKind.WORKSPACES, fields)
        return {"workspace_id": workspace_id}

    async def _create_owner_membership(self, context: SagaContext) -> Dict[str, Any]:
        membership_id = await self.gateway.insert(
            EntityKind.MEMBERSHIPS,
            {
                "workspace_id": context["workspace_id"],
                "user_id": context["owner_id"],
                "role": MembershipRole.OWNER.value,
            },
        )
        return {"owner_membership_id": membership_id}

    async def _create_ticket_config(self, context: SagaContext) -> Dict[str, Any]:
        config_id = await self.gateway.insert(
            EntityKind.TICKET_CONFIGS,
            {"workspace_id": context["workspace_id"], **catalog.TICKET_CONFIG_FLAGS},
        )
        return {"ticket_config_id": config_id}

    async def _create_default_groups(self, context: SagaContext) -> Dict[str, Any]:
        group_ids = await self._seed_names(
            EntityKind.GROUPS, context["workspace_id"], catalog.DEFAULT_GROUPS
        )
        return {
            "group_ids": group_ids,
            "management_group_id": _id_for(
                group_ids, catalog.DEFAULT_GROUPS, catalog.MANAGEMENT_GROUP
            ),
        }

    async def _add_owner_to_management(self, context: SagaContext) -> Dict[str, Any]:
        membership_id = await self.gateway.insert(
            EntityKind.GROUP_MEMBERSHIPS,
            {"group_id": context["management_group_id"], "user_id": context["owner_id"]},
        )
        return {"owner_group_membership_id": membership_id}

    async def _create_default_types(self, context: SagaContext) -> Dict[str, Any]:
        type_ids = await self._seed_names(
            EntityKind.TICKET_TYPES, context["workspace_id"], catalog.DEFAULT_TICKET_TYPES
        )
        return {
            "type_ids": type_ids,
            "task_type_id": _id_for(
                type_ids, catalog.DEFAULT_TICKET_TYPES, catalog.SAMPLE_TICKET_TYPE
            ),
        }

    async def _create_default_topics(self, context: SagaContext) -> Dict[str, Any]:
        topic_ids = await self._seed_names(
            EntityKind.TICKET_TOPICS, context["workspace_id"], catalog.DEFAULT_TICKET_TOPICS
        )
        return {
            "topic_ids": topic_ids,
            "technical_support_topic_id": _id_for(
                topic_ids, catalog.DEFAULT_TICKET_TOPICS, catalog.SAMPLE_TICKET_TOPIC
            ),
        }

    async def _create_default_tags(self, context: SagaContext) -> Dict[str, Any]:
        tag_ids = await self._seed_names(
            EntityKind.TAGS, context["workspace_id"], catalog.DEFAULT_TAGS
        )
        return {
            "tag_ids": tag_ids,
            "fy2025_tag_id": _id_for(tag_ids, catalog.DEFAULT_TAGS, catalog.FY2025_TAG),
        }

    async def _create_default_resolutions(self, context: SagaContext) -> Dict[str, Any]:
        resolution_ids = await self._seed_names(
            EntityKind.RESOLUTIONS, context["workspace_id"], catalog.DEFAULT_RESOLUTIONS
        )
        return {"resolution_ids": resolution_ids}

    async def _create_sample_ticket(self, context: SagaContext) -> Dict[str, Any]:
        owner_id = context["owner_id"]
        ticket = {
            **catalog.SAMPLE_TICKET,
            "workspace_id": context["workspace_id"],
            "group_id": context["management_group_id"],
            "type_id": context["task_type_id"],
            "topic_id": context["technical_support_topic_id"],
            "creator_id": owner_id,
            "requestor_id": owner_id,
            "assignee_id": owner_id,
        }
        ticket_id = await self.gateway.insert(EntityKind.TICKETS, ticket)
        return {"sample_ticket_id": ticket_id, "sample_ticket": ticket}

    async def _create_sample_ticket_version(self, context: SagaContext) -> Dict[str, Any]:
        version_id = await self.gateway.insert(
            EntityKind.TICKET_VERSIONS,
            {**context["sample_ticket"], "ticket_id": context["sample_ticket_id"]},
        )
        return {"sample_ticket_version_id": version_id}

    async def _create_sample_macro(self, context: SagaContext) -> Dict[str, Any]:
        macro_id = await self.gateway.insert(
            EntityKind.MACROS,
            {
                **catalog.SAMPLE_MACRO,
                "workspace_id": context["workspace_id"],
                "group_id": context["management_group_id"],
                "type_id": context["task_type_id"],
                "topic_id": context["technical_support_topic_id"],
            },
        )
        return {"sample_macro_id": macro_id}

    # Helpers

    async def _seed_names(
        self,
        kind: EntityKind,
        workspace_id: str,
        names: Sequence[str],
    ) -> List[str]:
        return await self.gateway.insert_many(
            kind,
            [{"workspace_id": workspace_id, "name": name} for name in names],
        )

    def _delete_one(self, kind: EntityKind, key: str) -> Compensation:
        async def compensate(context: SagaContext) -> None:
            await self.gateway.delete(kind, context[key])

        return compensate

    def _delete_batch(self, kind: EntityKind, key: str) -> Compensation:
        async def compensate(context: SagaContext) -> None:
            await self.gateway.delete_many(kind, context[key])

        return compensate


def _id_for(ids: Sequence[str], names: Sequence[str], name: str) -> str:
    # insert_many preserves input order
    return ids[list(names).index(name)]
