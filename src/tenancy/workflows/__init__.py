"""Provisioning and invitation workflows built on the saga engine."""

from src.tenancy.workflows.invitation import InvitationResolutionWorkflow
from src.tenancy.workflows.provisioning import WorkspaceProvisioningWorkflow

__all__ = [
    "InvitationResolutionWorkflow",
    "WorkspaceProvisioningWorkflow",
]
