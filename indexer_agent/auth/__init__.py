from indexer_agent.auth.permissions import Permission
from indexer_agent.auth.roles import Role, ROLE_PERMISSIONS
from indexer_agent.auth.context import RequestContext

__all__ = ["Permission", "Role", "ROLE_PERMISSIONS", "RequestContext"]
