"""
Knowledge Layer - Atoms, Relations, Clusters and the Knowledge Store.

The graph-backed store is the single system of record for every trust layer.
"""

from knowledge_core.knowledge.schemas import (
    AIAction,
    Atom,
    AtomKind,
    AtomLayer,
    AtomStatus,
    Cluster,
    ClusterDecision,
    DaciRoles,
    DecisionMatrix,
    Impact,
    InvalidTransition,
    Relation,
    RelationType,
    Reversibility,
)
from knowledge_core.knowledge.store import (
    AtomFilter,
    AtomNotFound,
    ClusterAlreadyDecided,
    ClusterFilter,
    ClusterNotFound,
    GraphKnowledgeStore,
    KnowledgeStore,
    KnowledgeStoreError,
    Page,
    StoreIntegrityError,
    StoreSnapshot,
    StoreWriteConflict,
)

__all__ = [
    # Store
    "KnowledgeStore",
    "GraphKnowledgeStore",
    "StoreSnapshot",
    "AtomFilter",
    "ClusterFilter",
    "Page",
    # Errors
    "KnowledgeStoreError",
    "ClusterNotFound",
    "AtomNotFound",
    "ClusterAlreadyDecided",
    "StoreWriteConflict",
    "StoreIntegrityError",
    "InvalidTransition",
    # Schemas
    "Atom",
    "AtomKind",
    "AtomLayer",
    "AtomStatus",
    "Relation",
    "RelationType",
    "Cluster",
    "ClusterDecision",
    "AIAction",
    "DaciRoles",
    "DecisionMatrix",
    "Impact",
    "Reversibility",
]
