"""
Role-Based Access Control (RBAC) lookup.

The role catalogue is consumed only as a ``role → allowed actions`` lookup.
Each action is ``"<resource>:<verb>"``; a trailing ``*`` grants every verb
on the resource.

Usage:
    from app.services.permission import role_has_access, check_access, PermissionDenied

    if role_has_access("DIRECTOR", "order_item", "transition"):
        ...

    check_access("QC_ENGINEER", "approval", "decide")   # raises PermissionDenied
"""

from app.core.exceptions import AuthorizationError


# ── Role catalogue ───────────────────────────────────────────────────────────

ROLES = (
    "SALES_EXECUTIVE", "SALES_MANAGER",
    "TECH_ENGINEER", "TECH_LEAD",
    "COMPLIANCE_OFFICER", "COMPLIANCE_MANAGER",
    "WAREHOUSE_EXECUTIVE", "WAREHOUSE_MANAGER",
    "SOURCING_ENGINEER",
    "PURCHASE_ENGINEER", "PURCHASE_MANAGER",
    "FINANCE_EXECUTIVE", "FINANCE_OFFICER", "FINANCE_MANAGER",
    "QC_ENGINEER", "QC_MANAGER",
    "LOGISTICS_EXECUTIVE", "LOGISTICS_MANAGER",
    "DIRECTOR", "MD",
    "SYSTEM",
)

SENIOR_ROLES = frozenset({"DIRECTOR", "MD"})

_ITEM_TRANSITIONS = {"rfq_item:transition", "order_item:transition"}

PERMISSION_MATRIX: dict[str, set[str]] = {
    "SALES_EXECUTIVE": {"rfq_item:transition", "workflow:execute"},
    "SALES_MANAGER": _ITEM_TRANSITIONS | {"workflow:execute", "approval:decide"},
    "TECH_ENGINEER": {"rfq_item:transition", "approval:decide"},
    "TECH_LEAD": {"rfq_item:transition", "approval:decide"},
    "COMPLIANCE_OFFICER": {"rfq_item:transition", "approval:decide"},
    "COMPLIANCE_MANAGER": {"rfq_item:transition", "approval:decide"},
    "WAREHOUSE_EXECUTIVE": _ITEM_TRANSITIONS,
    "WAREHOUSE_MANAGER": _ITEM_TRANSITIONS,
    "SOURCING_ENGINEER": {"rfq_item:transition", "approval:decide"},
    "PURCHASE_ENGINEER": {"order_item:transition"},
    "PURCHASE_MANAGER": _ITEM_TRANSITIONS | {"approval:decide"},
    "FINANCE_EXECUTIVE": {"order_item:transition"},
    "FINANCE_OFFICER": {"order_item:transition", "approval:decide"},
    "FINANCE_MANAGER": {"order_item:transition", "approval:decide"},
    "QC_ENGINEER": {"order_item:transition", "nonconformance:disposition"},
    "QC_MANAGER": {"order_item:transition", "nonconformance:disposition", "approval:decide"},
    "LOGISTICS_EXECUTIVE": {"order_item:transition"},
    "LOGISTICS_MANAGER": {"order_item:transition"},
    "DIRECTOR": {"rfq_item:*", "order_item:*", "workflow:*", "approval:*", "nonconformance:*", "sla:*"},
    "MD": {"rfq_item:*", "order_item:*", "workflow:*", "approval:*", "nonconformance:*", "sla:*"},
    "SYSTEM": {"rfq_item:transition", "order_item:transition", "workflow:*", "sla:*"},
}


class PermissionDenied(AuthorizationError):
    """Raised when a role lacks the required action."""

    def __init__(self, role: str, resource: str, action: str):
        super().__init__(
            f"Role {role} does not have permission for '{resource}:{action}'",
            details={"role": role, "resource": resource, "action": action},
        )
        self.role = role
        self.resource = resource
        self.action = action


def role_has_access(role: str | None, resource: str, action: str) -> bool:
    """
    Check whether *role* may perform *action* on *resource*.

    Unknown roles have no access.
    """
    allowed = PERMISSION_MATRIX.get(role or "", set())
    return f"{resource}:{action}" in allowed or f"{resource}:*" in allowed


def check_access(role: str | None, resource: str, action: str) -> None:
    """Raise PermissionDenied unless ``role_has_access``."""
    if not role_has_access(role, resource, action):
        raise PermissionDenied(role or "<none>", resource, action)
