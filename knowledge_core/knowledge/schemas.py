"""
Pydantic Schemas for the Knowledge Layer.

Defines atoms, relations and review clusters together with the closed
transition tables that govern their trust layer, status and review decision.
All models are frozen: a change is a new instance produced by one of the
transition methods, never an in-place mutation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Self
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidTransition(ValueError):
    """Raised when a layer, status or decision change is not in its transition table."""

    pass


class AtomKind(str, Enum):
    """Kinds of independently-assertable knowledge."""

    FACT = "fact"
    DECISION = "decision"
    RISK = "risk"
    ASSUMPTION = "assumption"
    REQUIREMENT = "requirement"


class AtomLayer(str, Enum):
    """
    Trust tier of an atom.

    staging: produced by ingestion, awaiting review
    exploratory: manually curated, never reached through ingestion
    canonical: trusted system of record
    """

    STAGING = "staging"
    EXPLORATORY = "exploratory"
    CANONICAL = "canonical"


class AtomStatus(str, Enum):
    """Lifecycle status; superseded atoms are kept as history."""

    ACTIVE = "active"
    SUPERSEDED = "superseded"


class RelationType(str, Enum):
    """Typed, directed links between atoms."""

    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    RELATED = "related"


class ClusterDecision(str, Enum):
    """Governance decision on a review cluster."""

    PENDING = "pending"
    PROMOTED = "promoted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ClusterDecision.PENDING


class AIAction(str, Enum):
    """Automated judgement recorded on an atom before review."""

    AUTO_FIXED = "auto-fixed"
    CONFLICT_DETECTED = "conflict-detected"
    DUPLICATE_MERGED = "duplicate-merged"


class Impact(str, Enum):
    HIGH = "high"
    LOW = "low"


class Reversibility(str, Enum):
    """Two-way door vs one-way door."""

    REVERSIBLE = "reversible"
    IRREVERSIBLE = "irreversible"


# Removal (rejection) is not a layer; it is handled by the store deleting the node.
LAYER_TRANSITIONS: dict[AtomLayer, frozenset[AtomLayer]] = {
    AtomLayer.STAGING: frozenset({AtomLayer.CANONICAL}),
    AtomLayer.EXPLORATORY: frozenset(),
    AtomLayer.CANONICAL: frozenset(),
}

STATUS_TRANSITIONS: dict[AtomStatus, frozenset[AtomStatus]] = {
    AtomStatus.ACTIVE: frozenset({AtomStatus.SUPERSEDED}),
    AtomStatus.SUPERSEDED: frozenset(),
}

DECISION_TRANSITIONS: dict[ClusterDecision, frozenset[ClusterDecision]] = {
    ClusterDecision.PENDING: frozenset({ClusterDecision.PROMOTED, ClusterDecision.REJECTED}),
    ClusterDecision.PROMOTED: frozenset(),
    ClusterDecision.REJECTED: frozenset(),
}


class DaciRoles(BaseModel):
    """Who drives, approves, contributes to and is informed of a decision."""

    model_config = ConfigDict(frozen=True)

    driver: tuple[str, ...] = ()
    approver: tuple[str, ...] = ()
    contributor: tuple[str, ...] = ()
    informed: tuple[str, ...] = ()


class DecisionMatrix(BaseModel):
    """Impact / reversibility classification of a decision."""

    model_config = ConfigDict(frozen=True)

    impact: Impact = Impact.LOW
    reversibility: Reversibility = Reversibility.REVERSIBLE


class Atom(BaseModel):
    """
    An atomic, independently-assertable unit of knowledge.

    Atoms are the nodes of the knowledge graph. They enter through
    ingestion in the staging layer (or through direct authoring in the
    exploratory layer) and only move forward through LAYER_TRANSITIONS.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4, description="Unique, immutable atom ID")
    capsule_id: str = Field(..., min_length=1, description="Ingestion batch/context grouping")
    statement: str = Field(..., min_length=1, description="The knowledge itself")
    kind: AtomKind
    confidence: int = Field(default=90, ge=0, le=100)
    layer: AtomLayer = AtomLayer.STAGING
    status: AtomStatus = AtomStatus.ACTIVE
    source_document_id: str | None = Field(default=None, description="Knowledge source this came from")
    source_name: str | None = Field(default=None, description="Human label of the knowledge source")
    created_at: datetime = Field(default_factory=utcnow)
    cluster_id: UUID | None = None
    superseded_by: UUID | None = None

    # Decision-only metadata
    daci_roles: DaciRoles | None = None
    decision_matrix: DecisionMatrix | None = None

    # Automated judgement audit trail
    ai_reasoning: tuple[str, ...] = ()
    ai_action: AIAction | None = None

    @model_validator(mode="after")
    def _decision_metadata_only_on_decisions(self) -> Self:
        if self.kind is not AtomKind.DECISION and (
            self.daci_roles is not None or self.decision_matrix is not None
        ):
            raise ValueError("daci_roles and decision_matrix are only valid on decision atoms")
        if self.status is AtomStatus.ACTIVE and self.superseded_by is not None:
            raise ValueError("superseded_by requires status 'superseded'")
        return self

    def moved_to(self, layer: AtomLayer) -> "Atom":
        """Return a copy in ``layer``; raises InvalidTransition if the move is illegal."""
        if layer not in LAYER_TRANSITIONS[self.layer]:
            raise InvalidTransition(
                f"Atom {self.id} cannot move from layer '{self.layer.value}' to '{layer.value}'"
            )
        return self.model_copy(update={"layer": layer})

    def superseded(self, by: UUID | None = None) -> "Atom":
        """Return a superseded copy; superseding is the only way an atom retires."""
        if AtomStatus.SUPERSEDED not in STATUS_TRANSITIONS[self.status]:
            raise InvalidTransition(f"Atom {self.id} is already superseded")
        return self.model_copy(update={"status": AtomStatus.SUPERSEDED, "superseded_by": by})

    def annotated(self, action: AIAction | None, reasoning: list[str] | tuple[str, ...]) -> "Atom":
        """Return a copy carrying an automated judgement (staging atoms only)."""
        if self.layer is not AtomLayer.STAGING:
            raise InvalidTransition(f"Atom {self.id} is no longer in staging")
        return self.model_copy(
            update={"ai_action": action, "ai_reasoning": (*self.ai_reasoning, *reasoning)}
        )


class Relation(BaseModel):
    """
    A directed, typed edge between two atoms.

    Relations are the edges of the knowledge graph and never outlive
    either endpoint.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    from_atom_id: UUID
    to_atom_id: UUID
    type: RelationType
    confidence: int = Field(default=80, ge=0, le=100)

    @model_validator(mode="after")
    def _no_self_loops(self) -> Self:
        if self.from_atom_id == self.to_atom_id:
            raise ValueError("a relation cannot connect an atom to itself")
        return self


class Cluster(BaseModel):
    """
    A named group of atoms from one ingestion batch awaiting a decision.

    ``decision`` is write-once: once promoted or rejected, it stays that way.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    capsule_id: str = Field(..., min_length=1)
    source_document_id: str | None = None
    title: str
    summary: str = ""
    item_ids: tuple[UUID, ...] = Field(..., min_length=1, description="Ordered member atom IDs")
    decision: ClusterDecision = ClusterDecision.PENDING
    confidence: int = Field(default=0, ge=0, le=100)
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: datetime | None = None

    @model_validator(mode="after")
    def _unique_members(self) -> Self:
        if len(set(self.item_ids)) != len(self.item_ids):
            raise ValueError("cluster item_ids must be unique")
        return self

    def decided(self, decision: ClusterDecision) -> "Cluster":
        """Return a copy carrying a terminal decision."""
        if decision not in DECISION_TRANSITIONS[self.decision]:
            raise InvalidTransition(
                f"Cluster {self.id} cannot go from '{self.decision.value}' to '{decision.value}'"
            )
        return self.model_copy(update={"decision": decision, "decided_at": utcnow()})
