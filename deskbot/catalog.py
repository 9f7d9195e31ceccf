"""Helpdesk-specific configuration for the ticket bot.

Edit this file to match your GLPI instance. The menu categories, their
backend category ids and the ticket status labels all live here so the
conversation engine stays generic.

Values can be overridden via environment variables prefixed with
``HELPDESK_`` (e.g. ``HELPDESK_DEFAULT_URGENCY=4``). List/dict fields accept
JSON.
"""

from __future__ import annotations

from pydantic import BaseModel
from pydantic_settings import BaseSettings

# GLPI ticket statuses.
STATUS_NEW = 1
STATUS_ASSIGNED = 2
STATUS_PLANNED = 3
STATUS_PENDING = 4
STATUS_SOLVED = 5
STATUS_CLOSED = 6

OPEN_STATUSES = frozenset({STATUS_NEW, STATUS_ASSIGNED, STATUS_PLANNED, STATUS_PENDING})


class Category(BaseModel):
    """One entry of the category menu."""

    key: str  # what the user types
    label: str  # what the user sees
    backend_id: int  # itilcategories_id in GLPI


class HelpdeskCatalog(BaseSettings):
    """Categories and status labels shown to chat users.

    IMPORTANT: the ``backend_id`` values must match the ITIL categories of
    YOUR GLPI instance.
    """

    categories: list[Category] = [
        Category(key="1", label="Software problems", backend_id=1),
        Category(key="2", label="E-mail & accounts", backend_id=2),
        Category(key="3", label="Network and internet", backend_id=3),
        Category(key="4", label="Printers", backend_id=4),
        Category(key="5", label="Hardware (desktops and laptops)", backend_id=5),
        Category(key="6", label="Mobile devices", backend_id=6),
        Category(key="7", label="Access management", backend_id=7),
        Category(key="8", label="General question", backend_id=8),
        Category(key="9", label="Other", backend_id=9),
    ]

    status_labels: dict[int, str] = {
        STATUS_NEW: "New",
        STATUS_ASSIGNED: "In progress (assigned)",
        STATUS_PLANNED: "In progress (planned)",
        STATUS_PENDING: "Pending",
        STATUS_SOLVED: "Solved",
        STATUS_CLOSED: "Closed",
    }

    # Fixed fields sent with every new ticket.
    request_type_id: int = 1
    default_urgency: int = 3

    model_config = {"env_prefix": "HELPDESK_", "env_file": ".env", "extra": "ignore"}

    def find_category(self, key: str) -> Category | None:
        for category in self.categories:
            if category.key == key:
                return category
        return None

    def status_label(self, status: int) -> str:
        return self.status_labels.get(status, "Unknown")


# Singleton instance used across the application.
helpdesk_catalog = HelpdeskCatalog()
