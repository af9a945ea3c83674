"""
Knowledge Store - NetworkX Integration.

The authoritative repository of atoms, relations and review clusters across
trust layers, and the only component that mutates persisted state.

Atoms are nodes and relations are keyed edges of a ``networkx.MultiDiGraph``;
clusters live in a side table. Every mutation is prepared under its resource
lock (per capsule for ingestion commits, per cluster for governance
transitions), then applied to a copy of the graph that is swapped in as a
whole. Readers only ever see a complete state.
"""

import json
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from uuid import UUID

import networkx as nx

from knowledge_core.knowledge.schemas import (
    AIAction,
    Atom,
    AtomLayer,
    AtomStatus,
    Cluster,
    ClusterDecision,
    Relation,
    RelationType,
)
from knowledge_core.utils.logger import get_logger

logger = get_logger(__name__)


class KnowledgeStoreError(Exception):
    """Base class for knowledge store failures."""

    pass


class ClusterNotFound(KnowledgeStoreError):
    """Raised when a cluster id is unknown."""

    def __init__(self, cluster_id: UUID) -> None:
        super().__init__(f"Cluster {cluster_id} not found")
        self.cluster_id = cluster_id


class AtomNotFound(KnowledgeStoreError):
    """Raised when an atom id is unknown."""

    def __init__(self, atom_id: UUID) -> None:
        super().__init__(f"Atom {atom_id} not found")
        self.atom_id = atom_id


class ClusterAlreadyDecided(KnowledgeStoreError):
    """Raised when a cluster already carries a terminal decision."""

    def __init__(self, cluster: Cluster) -> None:
        super().__init__(f"Cluster {cluster.id} is already {cluster.decision.value}")
        self.cluster = cluster

    @property
    def decision(self) -> ClusterDecision:
        return self.cluster.decision


class StoreWriteConflict(KnowledgeStoreError):
    """Raised when a commit collides with another write on the same resource."""

    pass


class StoreIntegrityError(KnowledgeStoreError):
    """Raised when a write would break a store invariant."""

    pass


@dataclass(frozen=True)
class AtomFilter:
    """Atom selection criteria; None means 'any'."""

    capsule_id: str | None = None
    layer: AtomLayer | None = None
    status: AtomStatus | None = None
    cluster_id: UUID | None = None
    source_document_id: str | None = None

    def matches(self, atom: Atom) -> bool:
        return (
            (self.capsule_id is None or atom.capsule_id == self.capsule_id)
            and (self.layer is None or atom.layer is self.layer)
            and (self.status is None or atom.status is self.status)
            and (self.cluster_id is None or atom.cluster_id == self.cluster_id)
            and (
                self.source_document_id is None
                or atom.source_document_id == self.source_document_id
            )
        )


@dataclass(frozen=True)
class ClusterFilter:
    """Cluster selection criteria; None means 'any'."""

    capsule_id: str | None = None
    source_document_id: str | None = None
    decision: ClusterDecision | None = None

    def matches(self, cluster: Cluster) -> bool:
        return (
            (self.capsule_id is None or cluster.capsule_id == self.capsule_id)
            and (
                self.source_document_id is None
                or cluster.source_document_id == self.source_document_id
            )
            and (self.decision is None or cluster.decision is self.decision)
        )


@dataclass(frozen=True)
class Page:
    """Offset/limit window; ``limit=None`` returns everything from ``offset``."""

    offset: int = 0
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.limit is not None and self.limit < 1:
            raise ValueError("limit must be >= 1")

    def apply(self, items: Sequence) -> list:
        end = None if self.limit is None else self.offset + self.limit
        return list(items[self.offset:end])


class StoreSnapshot:
    """
    A consistent, read-only view of the store at one point in time.

    The graph and cluster table it wraps are never mutated after the
    snapshot is taken; writers always swap in fresh copies.
    """

    def __init__(self, graph: nx.MultiDiGraph, clusters: dict[UUID, Cluster]) -> None:
        self._graph = graph
        self._clusters = clusters

    def atoms(self) -> list[Atom]:
        """All atoms in insertion order."""
        return [data["atom"] for _, data in self._graph.nodes(data=True)]

    def get_atom(self, atom_id: UUID) -> Atom | None:
        node_id = str(atom_id)
        if not self._graph.has_node(node_id):
            return None
        return self._graph.nodes[node_id]["atom"]

    def list_atoms(
        self,
        atom_filter: AtomFilter | None = None,
        page: Page | None = None,
    ) -> tuple[list[Atom], int]:
        """Return (page of matching atoms, total matching)."""
        atom_filter = atom_filter or AtomFilter()
        matching = [atom for atom in self.atoms() if atom_filter.matches(atom)]
        return (page or Page()).apply(matching), len(matching)

    def relations(self) -> list[Relation]:
        return [data["relation"] for _, _, data in self._graph.edges(data=True)]

    def outgoing_relations(self, atom_id: UUID) -> list[Relation]:
        node_id = str(atom_id)
        if not self._graph.has_node(node_id):
            return []
        return [data["relation"] for _, _, data in self._graph.out_edges(node_id, data=True)]

    def get_relations_for(self, atom_id: UUID) -> list[Relation]:
        """Outgoing then incoming relations of an atom."""
        node_id = str(atom_id)
        if not self._graph.has_node(node_id):
            raise AtomNotFound(atom_id)
        outgoing = [d["relation"] for _, _, d in self._graph.out_edges(node_id, data=True)]
        incoming = [d["relation"] for _, _, d in self._graph.in_edges(node_id, data=True)]
        return outgoing + incoming

    def get_cluster(self, cluster_id: UUID) -> Cluster | None:
        return self._clusters.get(cluster_id)

    def list_clusters(self, cluster_filter: ClusterFilter | None = None) -> list[Cluster]:
        cluster_filter = cluster_filter or ClusterFilter()
        return [c for c in self._clusters.values() if cluster_filter.matches(c)]

    def atom_count(self) -> int:
        return self._graph.number_of_nodes()

    def relation_count(self) -> int:
        return self._graph.number_of_edges()


class KnowledgeStore(Protocol):
    """Repository abstraction over the knowledge graph."""

    def append(
        self,
        atoms: Sequence[Atom],
        relations: Sequence[Relation],
        clusters: Sequence[Cluster],
    ) -> None: ...

    def transition_cluster(self, cluster_id: UUID, decision: ClusterDecision) -> Cluster: ...

    def list_atoms(
        self, atom_filter: AtomFilter | None = None, page: Page | None = None
    ) -> tuple[list[Atom], int]: ...

    def list_clusters(self, cluster_filter: ClusterFilter | None = None) -> list[Cluster]: ...

    def get_relations_for(self, atom_id: UUID) -> list[Relation]: ...

    def get_atom(self, atom_id: UUID) -> Atom | None: ...

    def get_cluster(self, cluster_id: UUID) -> Cluster | None: ...

    def snapshot(self) -> StoreSnapshot: ...

    def author(self, atom: Atom, relations: Sequence[Relation] = ()) -> Atom: ...

    def supersede(self, atom_id: UUID, replacement_id: UUID | None = None) -> Atom: ...


class GraphKnowledgeStore:
    """
    NetworkX-backed knowledge store with optional JSON persistence.

    Usage:
        store = GraphKnowledgeStore()
        store.append(atoms, relations, clusters)
        store.transition_cluster(cluster.id, ClusterDecision.PROMOTED)
        atoms, total = store.list_atoms(AtomFilter(layer=AtomLayer.CANONICAL))
    """

    def __init__(
        self,
        persist_path: Path | None = None,
        lock_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the knowledge store.

        Args:
            persist_path: Optional JSON file to persist the store to
            lock_timeout: Seconds a writer waits for its resource lock
        """
        self.persist_path = persist_path
        self.lock_timeout = lock_timeout

        self._graph: nx.MultiDiGraph = nx.MultiDiGraph()
        self._clusters: dict[UUID, Cluster] = {}

        # Guards the swap of (graph, clusters); held only for short sections.
        self._state_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._capsule_locks: dict[str, threading.Lock] = {}
        self._cluster_locks: dict[UUID, threading.Lock] = {}

        if persist_path and persist_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> StoreSnapshot:
        """Take a consistent view of the current state."""
        with self._state_lock:
            return StoreSnapshot(self._graph, self._clusters)

    def list_atoms(
        self,
        atom_filter: AtomFilter | None = None,
        page: Page | None = None,
    ) -> tuple[list[Atom], int]:
        return self.snapshot().list_atoms(atom_filter, page)

    def list_clusters(self, cluster_filter: ClusterFilter | None = None) -> list[Cluster]:
        return self.snapshot().list_clusters(cluster_filter)

    def get_relations_for(self, atom_id: UUID) -> list[Relation]:
        return self.snapshot().get_relations_for(atom_id)

    def get_atom(self, atom_id: UUID) -> Atom | None:
        return self.snapshot().get_atom(atom_id)

    def get_cluster(self, cluster_id: UUID) -> Cluster | None:
        return self.snapshot().get_cluster(cluster_id)

    def node_count(self) -> int:
        return self.snapshot().atom_count()

    def edge_count(self) -> int:
        return self.snapshot().relation_count()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        atoms: Sequence[Atom],
        relations: Sequence[Relation],
        clusters: Sequence[Cluster],
    ) -> None:
        """
        Commit one ingestion batch: all atoms, relations and clusters, or nothing.

        Args:
            atoms: Staging atoms of a single capsule
            relations: Relations among the batch and/or existing atoms
            clusters: Pending clusters that partition ``atoms``

        Raises:
            StoreWriteConflict: If the capsule is locked by another commit or
                any id already exists
            StoreIntegrityError: If the batch breaks a store invariant
        """
        capsule_id = self._validate_batch(atoms, clusters)

        lock = self._resource_lock(self._capsule_locks, capsule_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise StoreWriteConflict(f"Capsule '{capsule_id}' is locked by another commit")

        try:
            batch_ids = {str(atom.id) for atom in atoms}

            def apply(graph: nx.MultiDiGraph, table: dict[UUID, Cluster]) -> None:
                clashes = [a for a in batch_ids if graph.has_node(a)]
                clashes += [str(c.id) for c in clusters if c.id in table]
                if clashes:
                    raise StoreWriteConflict(f"Ids already committed: {', '.join(sorted(clashes))}")

                for relation in relations:
                    for endpoint in (str(relation.from_atom_id), str(relation.to_atom_id)):
                        if endpoint not in batch_ids and not graph.has_node(endpoint):
                            raise StoreIntegrityError(
                                f"Relation {relation.id} references unknown atom {endpoint}"
                            )

                for atom in atoms:
                    self._add_atom(graph, atom)
                for relation in relations:
                    self._add_relation(graph, relation)
                for cluster in clusters:
                    table[cluster.id] = cluster

            self._commit(apply)
        finally:
            lock.release()

        logger.info(
            f"Committed capsule '{capsule_id}': {len(atoms)} atoms, "
            f"{len(relations)} relations, {len(clusters)} clusters"
        )

    def transition_cluster(self, cluster_id: UUID, decision: ClusterDecision) -> Cluster:
        """
        Atomically apply a terminal decision to a pending cluster.

        Promotion moves every member atom from staging to canonical; atoms
        flagged as duplicates of canonical knowledge are folded in as
        superseded history. Rejection hard-deletes every member atom and,
        with them, every relation touching them.

        Args:
            cluster_id: Cluster to decide
            decision: PROMOTED or REJECTED

        Returns:
            The decided cluster

        Raises:
            ClusterNotFound: Unknown cluster
            ClusterAlreadyDecided: Cluster already carries a terminal decision
            StoreWriteConflict: The cluster lock could not be acquired in time
        """
        if not decision.is_terminal:
            raise ValueError("A cluster can only transition to a terminal decision")

        lock = self._resource_lock(self._cluster_locks, cluster_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise StoreWriteConflict(f"Cluster {cluster_id} is locked by another transition")

        try:
            current = self.snapshot()
            cluster = current.get_cluster(cluster_id)
            if cluster is None:
                raise ClusterNotFound(cluster_id)
            if cluster.decision.is_terminal:
                raise ClusterAlreadyDecided(cluster)

            decided = cluster.decided(decision)
            members = [current.get_atom(atom_id) for atom_id in cluster.item_ids]

            if decision is ClusterDecision.PROMOTED:
                updates = [
                    self._promoted(atom, current) for atom in members if atom is not None
                ]

                def apply(graph: nx.MultiDiGraph, table: dict[UUID, Cluster]) -> None:
                    for atom in updates:
                        graph.nodes[str(atom.id)]["atom"] = atom
                    table[cluster_id] = decided

            else:
                doomed = [str(atom.id) for atom in members if atom is not None]

                def apply(graph: nx.MultiDiGraph, table: dict[UUID, Cluster]) -> None:
                    graph.remove_nodes_from(doomed)
                    table[cluster_id] = decided

            self._commit(apply)
        finally:
            lock.release()

        logger.info(f"Cluster {cluster_id} {decision.value} ({len(cluster.item_ids)} atoms)")
        return decided

    def author(self, atom: Atom, relations: Sequence[Relation] = ()) -> Atom:
        """
        Add a manually curated atom to the exploratory layer.

        Raises:
            StoreIntegrityError: If the atom is not an active exploratory atom
                or a relation does not touch it
            StoreWriteConflict: If the id already exists
        """
        if atom.layer is not AtomLayer.EXPLORATORY or atom.status is not AtomStatus.ACTIVE:
            raise StoreIntegrityError("Only active exploratory atoms can be authored directly")
        if atom.cluster_id is not None:
            raise StoreIntegrityError("Authored atoms do not belong to review clusters")

        atom_node = str(atom.id)

        def apply(graph: nx.MultiDiGraph, table: dict[UUID, Cluster]) -> None:
            if graph.has_node(atom_node):
                raise StoreWriteConflict(f"Atom {atom.id} already exists")
            for relation in relations:
                endpoints = {str(relation.from_atom_id), str(relation.to_atom_id)}
                if atom_node not in endpoints:
                    raise StoreIntegrityError(f"Relation {relation.id} does not touch atom {atom.id}")
                for endpoint in endpoints - {atom_node}:
                    if not graph.has_node(endpoint):
                        raise StoreIntegrityError(
                            f"Relation {relation.id} references unknown atom {endpoint}"
                        )
            self._add_atom(graph, atom)
            for relation in relations:
                self._add_relation(graph, relation)

        self._commit(apply)
        logger.info(f"Authored exploratory atom {atom.id}")
        return atom

    def supersede(self, atom_id: UUID, replacement_id: UUID | None = None) -> Atom:
        """
        Mark an active, reviewed atom as superseded (history is kept).

        Staging atoms are governed through their cluster and cannot be
        superseded directly.

        Raises:
            AtomNotFound: Unknown atom or replacement
            InvalidTransition: Atom already superseded
            StoreIntegrityError: Atom still in staging
        """
        result: list[Atom] = []

        def apply(graph: nx.MultiDiGraph, table: dict[UUID, Cluster]) -> None:
            node_id = str(atom_id)
            if not graph.has_node(node_id):
                raise AtomNotFound(atom_id)
            if replacement_id is not None and not graph.has_node(str(replacement_id)):
                raise AtomNotFound(replacement_id)
            atom: Atom = graph.nodes[node_id]["atom"]
            if atom.layer is AtomLayer.STAGING:
                raise StoreIntegrityError(
                    f"Atom {atom_id} is in staging; promote or reject its cluster instead"
                )
            updated = atom.superseded(by=replacement_id)
            graph.nodes[node_id]["atom"] = updated
            result.append(updated)

        self._commit(apply)
        logger.info(f"Atom {atom_id} superseded by {replacement_id}")
        return result[0]

    def save(self, path: Path | None = None) -> None:
        """
        Save the store to disk.

        Args:
            path: Path to save to (uses persist_path if not specified)
        """
        save_path = path or self.persist_path
        if not save_path:
            raise KnowledgeStoreError("No save path specified")

        current = self.snapshot()
        self._write(save_path, current._graph, current._clusters)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, apply: Callable[[nx.MultiDiGraph, dict[UUID, Cluster]], None]) -> None:
        """Apply a mutation to copies of the state and swap them in atomically."""
        with self._state_lock:
            graph = self._graph.copy()
            table = dict(self._clusters)
            apply(graph, table)
            if self.persist_path:
                self._write(self.persist_path, graph, table)
            self._graph, self._clusters = graph, table

    def _resource_lock(self, registry: dict, key: object) -> threading.Lock:
        with self._locks_guard:
            return registry.setdefault(key, threading.Lock())

    @staticmethod
    def _validate_batch(atoms: Sequence[Atom], clusters: Sequence[Cluster]) -> str:
        """Check the batch against the ingestion invariants; return its capsule id."""
        if not atoms:
            raise StoreIntegrityError("An ingestion batch needs at least one atom")
        if not clusters:
            raise StoreIntegrityError("An ingestion batch needs at least one cluster")

        capsules = {a.capsule_id for a in atoms} | {c.capsule_id for c in clusters}
        if len(capsules) != 1:
            raise StoreIntegrityError(f"A batch must belong to one capsule, got {sorted(capsules)}")

        atom_ids = [atom.id for atom in atoms]
        if len(set(atom_ids)) != len(atom_ids):
            raise StoreIntegrityError("Duplicate atom ids in batch")

        for atom in atoms:
            if atom.layer is not AtomLayer.STAGING or atom.status is not AtomStatus.ACTIVE:
                raise StoreIntegrityError(f"Ingested atom {atom.id} must be active and in staging")

        membership: dict[UUID, UUID] = {}
        for cluster in clusters:
            if cluster.decision is not ClusterDecision.PENDING:
                raise StoreIntegrityError(f"Ingested cluster {cluster.id} must be pending")
            for atom_id in cluster.item_ids:
                if atom_id in membership:
                    raise StoreIntegrityError(f"Atom {atom_id} belongs to more than one cluster")
                membership[atom_id] = cluster.id

        for atom in atoms:
            if membership.get(atom.id) != atom.cluster_id or atom.cluster_id is None:
                raise StoreIntegrityError(f"Atom {atom.id} is not a member of its cluster")
        if set(membership) != set(atom_ids):
            raise StoreIntegrityError("Clusters reference atoms outside the batch")

        return capsules.pop()

    @staticmethod
    def _promoted(atom: Atom, current: StoreSnapshot) -> Atom:
        """Canonical version of a staging atom."""
        promoted = atom.moved_to(AtomLayer.CANONICAL)
        if atom.ai_action is not AIAction.DUPLICATE_MERGED:
            return promoted

        for relation in current.outgoing_relations(atom.id):
            if relation.type is not RelationType.RELATED:
                continue
            target = current.get_atom(relation.to_atom_id)
            if target is not None and target.layer is AtomLayer.CANONICAL:
                return promoted.superseded(by=target.id)
        return promoted

    @staticmethod
    def _add_atom(graph: nx.MultiDiGraph, atom: Atom) -> None:
        graph.add_node(
            str(atom.id),
            atom=atom,
            layer=atom.layer.value,
            capsule_id=atom.capsule_id,
        )

    @staticmethod
    def _add_relation(graph: nx.MultiDiGraph, relation: Relation) -> None:
        graph.add_edge(
            str(relation.from_atom_id),
            str(relation.to_atom_id),
            key=str(relation.id),
            relation=relation,
            relation_type=relation.type.value,
        )

    @staticmethod
    def _write(path: Path, graph: nx.MultiDiGraph, clusters: dict[UUID, Cluster]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "atoms": [d["atom"].model_dump(mode="json") for _, d in graph.nodes(data=True)],
            "relations": [
                d["relation"].model_dump(mode="json") for _, _, d in graph.edges(data=True)
            ],
            "clusters": [c.model_dump(mode="json") for c in clusters.values()],
        }
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)

    def _load(self) -> None:
        """Load the store from disk."""
        assert self.persist_path is not None
        try:
            with open(self.persist_path) as f:
                data = json.load(f)

            graph = nx.MultiDiGraph()
            for raw in data.get("atoms", []):
                self._add_atom(graph, Atom.model_validate(raw))
            for raw in data.get("relations", []):
                self._add_relation(graph, Relation.model_validate(raw))
            clusters = {
                cluster.id: cluster
                for cluster in (Cluster.model_validate(raw) for raw in data.get("clusters", []))
            }
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load knowledge store from {self.persist_path}: {e}")
            raise KnowledgeStoreError(f"Failed to load {self.persist_path}: {e}") from e

        self._graph, self._clusters = graph, clusters
        logger.info(
            f"Loaded knowledge store from {self.persist_path} "
            f"({graph.number_of_nodes()} atoms, {graph.number_of_edges()} relations, "
            f"{len(clusters)} clusters)"
        )
