"""
Pydantic Schemas for the Ingestion Layer.

Candidate output of extractors, progress events streamed while a batch runs,
and the status record of each ingestion job (knowledge source).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Self
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from knowledge_core.knowledge.schemas import (
    Atom,
    AtomKind,
    Cluster,
    DaciRoles,
    DecisionMatrix,
    Relation,
    RelationType,
    utcnow,
)


def _percent(value: Any) -> Any:
    """Accept 0-1 fractions and float percentages from model output."""
    if isinstance(value, float):
        return round(value * 100) if 0.0 <= value <= 1.0 else round(value)
    return value


# ============================================================================
# Extractor Output
# ============================================================================


class CandidateAtom(BaseModel):
    """An atom proposed by an extractor, before it gets an identity."""

    statement: str = Field(..., min_length=1, description="The knowledge itself")
    kind: AtomKind
    confidence: int = Field(default=80, ge=0, le=100)
    daci_roles: DaciRoles | None = None
    decision_matrix: DecisionMatrix | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Any:
        return _percent(value)

    @model_validator(mode="after")
    def _decision_metadata_only_on_decisions(self) -> Self:
        if self.kind is not AtomKind.DECISION and (
            self.daci_roles is not None or self.decision_matrix is not None
        ):
            raise ValueError("daci_roles and decision_matrix are only valid on decision atoms")
        return self


class CandidateRelation(BaseModel):
    """A relation between two candidate atoms, by position in the atom list."""

    from_index: int = Field(..., ge=0)
    to_index: int = Field(..., ge=0)
    type: RelationType
    confidence: int = Field(default=80, ge=0, le=100)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Any:
        return _percent(value)


class ExtractionOutput(BaseModel):
    """Complete extractor output: atoms plus index-based relations."""

    atoms: list[CandidateAtom] = Field(default_factory=list)
    relations: list[CandidateRelation] = Field(default_factory=list)

    @model_validator(mode="after")
    def _relation_indices_in_range(self) -> Self:
        for relation in self.relations:
            for index in (relation.from_index, relation.to_index):
                if index >= len(self.atoms):
                    raise ValueError(
                        f"relation index {index} out of range for {len(self.atoms)} atoms"
                    )
            if relation.from_index == relation.to_index:
                raise ValueError(f"relation {relation.from_index}->{relation.to_index} is a self-loop")
        return self


# ============================================================================
# Progress
# ============================================================================


class PipelineStage(str, Enum):
    """Pipeline stages, in execution order."""

    EXTRACTION = "extraction"
    EMBEDDING = "embedding"
    CLUSTERING = "clustering"
    CONFLICT_CHECKS = "conflictChecks"


class StageState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class ProgressSignal(str, Enum):
    """Kind of progress event; ``complete`` and ``error`` are terminal."""

    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ProgressSignal.PROGRESS


class CamelModel(BaseModel):
    """Base for wire-facing models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProgressEvent(CamelModel):
    """One ``{stage, state}`` update of a running batch, or its terminal signal."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    capsule_id: str
    source_document_id: str
    signal: ProgressSignal = ProgressSignal.PROGRESS
    stage: PipelineStage | None = None
    state: StageState | None = None
    message: str | None = None
    cluster_ids: tuple[UUID, ...] = ()
    atom_count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class StageStatus(CamelModel):
    state: StageState = StageState.PENDING


class JobState(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class IngestionStatus(CamelModel):
    """
    Status of one ingestion job (a knowledge source).

    ``stages`` is keyed by the wire name of each stage so the record dumps as
    ``{"stages": {"extraction": {"state": ...}, ...}}``.
    """

    capsule_id: str
    source_document_id: str
    source_name: str | None = None
    state: JobState = JobState.RUNNING
    stages: dict[str, StageStatus] = Field(
        default_factory=lambda: {stage.value: StageStatus() for stage in PipelineStage}
    )
    error: str | None = None
    atom_count: int = 0
    cluster_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    def stage_state(self, stage: PipelineStage) -> StageState:
        return self.stages[stage.value].state


# ============================================================================
# Result
# ============================================================================


class IngestionResult(BaseModel):
    """What a successful ingestion committed to the store."""

    capsule_id: str
    source_document_id: str
    atoms: list[Atom] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)
    clusters: list[Cluster] = Field(default_factory=list)
    events: list[ProgressEvent] = Field(default_factory=list)

    @property
    def atom_count(self) -> int:
        return len(self.atoms)

    @property
    def cluster_count(self) -> int:
        return len(self.clusters)
