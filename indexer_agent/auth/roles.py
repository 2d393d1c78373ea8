"""
Role definitions — which bundles of permissions make up each role.

    VIEWER < OPERATOR < ADMIN

There is also a SYSTEM role for the worker process, which queues and
executes actions but does not edit rules.
"""

from enum import Enum
from indexer_agent.auth.permissions import Permission


class Role(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    ADMIN = "admin"
    SYSTEM = "system"


# ── Viewer: read-only ──
_VIEWER_PERMS: set[Permission] = {
    Permission.RULES_READ,
    Permission.ACTIONS_READ,
    Permission.ALLOCATIONS_READ,
}

# ── Operator: viewer + queue and approve actions ──
_OPERATOR_PERMS: set[Permission] = {
    *_VIEWER_PERMS,
    Permission.ACTIONS_QUEUE,
    Permission.ACTIONS_APPROVE,
}

# ── Admin: everything ──
_ADMIN_PERMS: set[Permission] = {p for p in Permission}

# ── System: the worker's decision and execution loops ──
_SYSTEM_PERMS: set[Permission] = {
    Permission.RULES_READ,
    Permission.ACTIONS_READ,
    Permission.ACTIONS_QUEUE,
    Permission.ACTIONS_APPROVE,
    Permission.ACTIONS_EXECUTE,
    Permission.ALLOCATIONS_READ,
}


ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.OPERATOR: _OPERATOR_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.SYSTEM: _SYSTEM_PERMS,
}
