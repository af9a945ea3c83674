"""
Governance Layer - Review Decisions and Read Projections.
"""

from knowledge_core.governance.controller import GovernanceController
from knowledge_core.governance.query_service import QueryService, QueryValidationError
from knowledge_core.governance.schemas import (
    ClusterView,
    ClusterViewFilter,
    EntityView,
    GovernanceResult,
    KnowledgeItemFilter,
    KnowledgeItemPage,
    KnowledgeItemView,
    RelatedItemView,
    RelationView,
    ViewStatus,
)

__all__ = [
    "GovernanceController",
    "GovernanceResult",
    "QueryService",
    "QueryValidationError",
    # Views
    "KnowledgeItemFilter",
    "KnowledgeItemPage",
    "KnowledgeItemView",
    "RelatedItemView",
    "RelationView",
    "ClusterView",
    "ClusterViewFilter",
    "EntityView",
    "ViewStatus",
]
