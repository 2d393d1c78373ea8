"""
RequestContext: the caller's identity and the permissions their role grants.

Resolved per request from the bearer token in `api/deps.py`. Endpoints
declare what they need with `require(...)` and read `ctx.actor` when they
record who did something.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException

from indexer_agent.auth.permissions import Permission
from indexer_agent.auth.roles import ROLE_PERMISSIONS, Role


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    role: Role

    @classmethod
    def from_claims(cls, claims: dict) -> RequestContext:
        """Tokens naming a role this service does not know are rejected outright."""
        try:
            role = Role(claims.get("role"))
        except ValueError:
            raise HTTPException(status_code=403, detail=f"Unknown role {claims.get('role')!r}")
        return cls(user_id=str(claims.get("sub") or "anonymous"), role=role)

    @property
    def permissions(self) -> frozenset[Permission]:
        return frozenset(ROLE_PERMISSIONS[self.role])

    def has_permission(self, perm: Permission) -> bool:
        return perm in self.permissions

    def require_permission(self, perm: Permission) -> None:
        if not self.has_permission(perm):
            raise HTTPException(
                status_code=403,
                detail=f"Role '{self.role.value}' lacks permission {perm.value}",
            )

    @property
    def actor(self) -> str:
        """Recorded as the audit actor and as the default action source."""
        return f"{self.role.value}:{self.user_id}"
