"""Entity kinds and caller-facing models for tenancy provisioning.

EntityKind names every collection the provisioning and invitation sagas
touch. Its values are the collection (table) names used by the remote
store, so gateways can address rows directly by kind.

The Pydantic models are the shapes returned to callers. Rows inside the
sagas travel as plain dicts, the way the gateway returns them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EntityKind(str, Enum):
    """Collections in the remote store, keyed by generated id."""

    WORKSPACES = "workspaces"
    MEMBERSHIPS = "workspace_memberships"
    GROUPS = "groups"
    GROUP_MEMBERSHIPS = "group_memberships"
    TICKET_CONFIGS = "ticket_configs"
    TICKET_TYPES = "ticket_type_options"
    TICKET_TOPICS = "ticket_topic_options"
    TAGS = "ticket_tags"
    RESOLUTIONS = "ticket_resolution_options"
    TICKETS = "tickets"
    TICKET_VERSIONS = "ticket_versions"
    MACROS = "tickets_macro"
    INVITES = "workspace_invites"


# Column sets that must be unique within a collection. The in-memory
# gateway enforces these; migrations/001_tenancy_schema.sql declares the
# same constraints for PostgreSQL. As in SQL, a key containing a NULL
# never conflicts.
UNIQUE_CONSTRAINTS: Dict[EntityKind, tuple] = {
    EntityKind.WORKSPACES: (("owner_id", "request_key"),),
    EntityKind.MEMBERSHIPS: (("workspace_id", "user_id"),),
    EntityKind.GROUPS: (("workspace_id", "name"),),
    EntityKind.GROUP_MEMBERSHIPS: (("group_id", "user_id"),),
    EntityKind.TICKET_CONFIGS: (("workspace_id",),),
    EntityKind.TICKET_TYPES: (("workspace_id", "name"),),
    EntityKind.TICKET_TOPICS: (("workspace_id", "name"),),
    EntityKind.TAGS: (("workspace_id", "name"),),
    EntityKind.RESOLUTIONS: (("workspace_id", "name"),),
}


class MembershipRole(str, Enum):
    """Role of a user within a workspace."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Workspace(BaseModel):
    """A tenant.

    Attributes:
        id: Generated workspace identifier.
        name: Display name; mutable later through settings.
        owner_id: The user that created the workspace.
        created_at: Creation time, when the store reports it.
    """

    id: str = Field(..., min_length=1, description="Generated workspace identifier")
    name: str = Field(..., min_length=1, description="Workspace display name")
    owner_id: str = Field(..., min_length=1, description="User that created the workspace")
    created_at: Optional[datetime] = Field(
        default=None,
        description="Creation time as reported by the store",
    )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Workspace":
        return cls(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]),
            created_at=row.get("created_at"),
        )


class Membership(BaseModel):
    """A user's role in a workspace. Unique per (workspace, user)."""

    id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    role: MembershipRole

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Membership":
        return cls(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            user_id=str(row["user_id"]),
            role=MembershipRole(row["role"]),
        )


class Invite(BaseModel):
    """A pending invitation. Consumed exactly once on accept or reject."""

    id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    role: MembershipRole = MembershipRole.MEMBER
    group_id: Optional[str] = Field(
        default=None,
        description="Group the invitee joins on acceptance, if any",
    )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Invite":
        group_id = row.get("group_id")
        return cls(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            email=row["email"],
            role=MembershipRole(row.get("role") or MembershipRole.MEMBER.value),
            group_id=str(group_id) if group_id is not None else None,
        )


class InvitationSummary(BaseModel):
    """A pending invitation as shown to the invitee."""

    id: str
    workspace_id: str
    workspace_name: str
    role: MembershipRole
    group_name: Optional[str] = None
