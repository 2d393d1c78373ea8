"""
Permission constants — the exhaustive list of operations exposed by the agent.

Each permission follows the pattern `resource:action`. JWTs carry a role
claim, which maps to a set of these permissions via ROLE_PERMISSIONS.
"""

from enum import Enum


class Permission(str, Enum):
    # ── Indexing rules ──
    RULES_READ = "rules:read"
    RULES_CONFIGURE = "rules:configure"         # set, delete, reset

    # ── Actions ──
    ACTIONS_READ = "actions:read"
    ACTIONS_QUEUE = "actions:queue"             # queue, update, cancel
    ACTIONS_APPROVE = "actions:approve"         # approve, queue pre-approved
    ACTIONS_EXECUTE = "actions:execute"         # manual execution trigger
    ACTIONS_DELETE = "actions:delete"

    # ── Allocations ──
    ALLOCATIONS_READ = "allocations:read"

    # ── Network ──
    NETWORK_CONFIGURE = "network:configure"     # conversion rate
