"""
Capability Constants and Definitions

WHY: Role checks used to be scattered across pages. Here every staff role
maps to a set of capability codes, and the settlement coordinator takes the
requester's capability set as a precondition instead.

DESIGN PRINCIPLES:
- Capabilities are granular (one action per capability)
- Categories group related capabilities for display
- Admin has all capabilities by default
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import PermissionDenied


# =============================================================================
# CAPABILITY CATEGORIES
# =============================================================================

class CapabilityCategory:
    """Capability categories for organization."""
    INVENTORY = "INVENTORY"
    SALES = "SALES"
    REPORTS = "REPORTS"
    SYSTEM = "SYSTEM"


# =============================================================================
# CAPABILITY DEFINITIONS
# =============================================================================

# Each capability is defined as: (code, name, description, category)
CAPABILITY_DEFINITIONS = [
    (
        "VIEW_INVENTORY",
        "View Inventory",
        "View items, stock levels and ledger history",
        CapabilityCategory.INVENTORY
    ),
    (
        "MANAGE_CATALOG",
        "Manage Catalog",
        "Create, edit and retire inventory items",
        CapabilityCategory.INVENTORY
    ),
    (
        "RESTOCK_INVENTORY",
        "Restock Inventory",
        "Record incoming stock from suppliers",
        CapabilityCategory.INVENTORY
    ),
    (
        "ADJUST_INVENTORY",
        "Adjust Inventory",
        "Record corrections and expired stock write-offs",
        CapabilityCategory.INVENTORY
    ),
    (
        "SELL_INVENTORY",
        "Sell Inventory",
        "Sell items at the counter (POS access)",
        CapabilityCategory.SALES
    ),
    (
        "VOID_SALE",
        "Void Sale",
        "Reverse a recorded sale (e.g. failed M-Pesa payment)",
        CapabilityCategory.SALES
    ),
    (
        "VIEW_REPORTS",
        "View Reports",
        "Access stock alerts, top sellers and daily stats",
        CapabilityCategory.REPORTS
    ),
    (
        "RECONCILE_LEDGER",
        "Reconcile Ledger",
        "Run stock/ledger consistency checks",
        CapabilityCategory.SYSTEM
    ),
]


def get_all_capability_codes() -> list[str]:
    return [code for code, _, _, _ in CAPABILITY_DEFINITIONS]


DEFAULT_ROLE_CAPABILITIES = {
    # Admin gets ALL capabilities
    "admin": get_all_capability_codes(),
    "cashier": [
        "VIEW_INVENTORY",
        "SELL_INVENTORY",
        "VIEW_REPORTS",
    ],
}


def capabilities_for_role(role: str | None) -> frozenset[str]:
    return frozenset(DEFAULT_ROLE_CAPABILITIES.get((role or "").lower(), ()))


@dataclass(frozen=True)
class Requester:
    """The staff member on whose behalf an operation runs."""
    staff_id: str | None
    role: str
    capabilities: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def for_role(cls, staff_id: str | None, role: str) -> "Requester":
        return cls(staff_id=staff_id, role=role, capabilities=capabilities_for_role(role))

    def can(self, code: str) -> bool:
        return code in self.capabilities


def require_capability(requester: Requester | None, code: str) -> None:
    """
    Raise PermissionDenied unless the requester holds `code`.

    requester=None is a trusted internal caller (CLI, background jobs).
    """
    if requester is None:
        return
    if not requester.can(code):
        raise PermissionDenied(
            f"Requires capability {code}",
            {"required_capability": code, "role": requester.role},
        )
