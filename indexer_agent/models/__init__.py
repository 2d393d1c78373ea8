from indexer_agent.models.action import Action, ActionStatus, ActionType  # noqa: F401
from indexer_agent.models.indexing_rule import IndexingRule, IdentifierType, DecisionBasis  # noqa: F401
from indexer_agent.models.cost_model import CostModel  # noqa: F401
from indexer_agent.models.audit import AuditLog  # noqa: F401
