"""
Pydantic Schemas for the Governance Layer.

Read-side projections of the knowledge store (what reviewers and API clients
see) and the outcome of governance commands. Wire names are camelCase.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import Field

from knowledge_core.ingestion.schemas import CamelModel
from knowledge_core.knowledge.schemas import (
    AIAction,
    AtomKind,
    AtomLayer,
    ClusterDecision,
    DaciRoles,
    DecisionMatrix,
    RelationType,
)


class ViewStatus(str, Enum):
    """Status shown to readers: the layer of an active atom, or 'superseded'."""

    STAGING = "staging"
    EXPLORATORY = "exploratory"
    CANONICAL = "canonical"
    SUPERSEDED = "superseded"


# ============================================================================
# Filters
# ============================================================================


class KnowledgeItemFilter(CamelModel):
    q: str | None = None
    status: ViewStatus | None = None
    layer: AtomLayer | None = None
    capsule_id: str | None = None


class ClusterViewFilter(CamelModel):
    knowledge_source_id: str | None = None
    capsule_id: str | None = None
    decision: ClusterDecision | None = None


# ============================================================================
# Views
# ============================================================================


class RelatedItemView(CamelModel):
    """Short reference to the target of an outgoing relation."""

    id: UUID
    type: AtomKind
    relation: RelationType
    title: str


class KnowledgeItemView(CamelModel):
    """An atom as presented in the knowledge browser."""

    id: UUID
    type: AtomKind
    content: str
    status: ViewStatus
    layer: AtomLayer
    source_name: str
    source_id: str | None = None
    capsule_id: str
    confidence: int
    cluster_id: UUID | None = None
    superseded_by: UUID | None = None
    related_items: list[RelatedItemView] = Field(default_factory=list)
    ai_action: AIAction | None = None
    ai_reasoning: list[str] = Field(default_factory=list)
    daci: DaciRoles | None = None
    decision_matrix: DecisionMatrix | None = None
    date_discovered: datetime


class KnowledgeItemPage(CamelModel):
    items: list[KnowledgeItemView] = Field(default_factory=list)
    total: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    offset: int = 0
    limit: int | None = None


class ClusterView(CamelModel):
    """A review cluster with its projected member atoms."""

    id: UUID
    title: str
    summary: str
    items: list[KnowledgeItemView] = Field(default_factory=list)
    promoted: bool = False
    rejected: bool = False
    decision: ClusterDecision
    confidence: int
    capsule_id: str
    knowledge_source_id: str | None = None
    created_at: datetime
    decided_at: datetime | None = None


class RelationView(CamelModel):
    id: UUID
    from_id: UUID
    to_id: UUID
    type: RelationType
    confidence: int
    direction: str = Field(..., description="'outgoing' or 'incoming' relative to the queried atom")


class EntityView(CamelModel):
    """Summary of one knowledge source and what it contributed."""

    id: str
    name: str
    capsule_id: str
    atom_count: int = 0
    cluster_count: int = 0
    counts: dict[str, int] = Field(default_factory=dict)


# ============================================================================
# Commands
# ============================================================================


class GovernanceResult(CamelModel):
    """Outcome of promote/reject; ``replayed`` when the cluster was already decided."""

    cluster_id: UUID
    decision: ClusterDecision
    replayed: bool = False
