"""Default catalog seeded into every new workspace.

Feature flags on the ticket config start enabled; workspace admins turn
individual catalogs off later through settings.
"""

from typing import Dict, Tuple


DEFAULT_GROUPS: Tuple[str, ...] = (
    "Sales",
    "Billing",
    "Finance",
    "Engineering",
    "Support",
    "Product Management",
    "Management",
)

# The owner joins this group; the sample ticket and macro are routed to it
MANAGEMENT_GROUP = "Management"

DEFAULT_TICKET_TYPES: Tuple[str, ...] = ("Task", "Bug", "Question", "Issue")
SAMPLE_TICKET_TYPE = "Task"

DEFAULT_TICKET_TOPICS: Tuple[str, ...] = (
    "Technical Support",
    "Product Issue",
    "Billing Issue",
    "Customer Inquiry",
    "Returns",
    "Refund",
    "Account Information",
)
SAMPLE_TICKET_TOPIC = "Technical Support"

DEFAULT_TAGS: Tuple[str, ...] = ("FY2025", "Project_Name")
FY2025_TAG = "FY2025"

DEFAULT_RESOLUTIONS: Tuple[str, ...] = (
    "Fixed",
    "Can't Reproduce",
    "Not to be fixed",
    "Duplicate",
)

TICKET_CONFIG_FLAGS: Dict[str, bool] = {
    "has_groups": True,
    "has_type": True,
    "has_topic": True,
    "has_resolution": True,
    "has_resolution_notes": True,
}

SAMPLE_TICKET: Dict[str, str] = {
    "subject": "Sample issue",
    "description": "This is a sample ticket.",
    "priority": "urgent",
    "status": "open",
}

SAMPLE_MACRO: Dict[str, str] = {
    "subject": "Sample macro",
    "description": "This is a sample macro that can be used as a template.",
    "priority": "high",
}
