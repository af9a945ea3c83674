"""
Similarity Clusterer - Groups a batch of atoms into review clusters.

Greedy centroid clustering in input order: each atom joins the cluster whose
centroid is most similar to it, provided the cosine similarity reaches the
threshold; otherwise it starts a new cluster. Ties go to the earliest cluster.
Atoms the extractor related to each other join the same cluster whatever
their embeddings. Atoms without an embedding are collected in a trailing
"Unclustered" cluster.
"""

from collections import Counter
from collections.abc import Sequence

import numpy as np

from knowledge_core.knowledge.schemas import Atom, AtomKind, Cluster
from knowledge_core.knowledge.similarity import cosine_similarity
from knowledge_core.utils.logger import get_logger

logger = get_logger(__name__)

UNCLUSTERED_TITLE = "Unclustered"


def summarize_kinds(atoms: Sequence[Atom]) -> str:
    """Human summary of a cluster's composition, e.g. 'Contains 1 decision and 2 risks.'"""
    counts = Counter(atom.kind for atom in atoms)
    parts = [
        f"{counts[kind]} {kind.value}{'' if counts[kind] == 1 else 's'}"
        for kind in AtomKind
        if counts[kind]
    ]
    if len(parts) > 1:
        listing = f"{', '.join(parts[:-1])} and {parts[-1]}"
    else:
        listing = parts[0]
    return f"Contains {listing}."


def cluster_title(atoms: Sequence[Atom], max_length: int = 60) -> str:
    """Statement of the most confident member (earliest on ties), truncated."""
    best = max(atoms, key=lambda atom: atom.confidence)
    title = best.statement.rstrip(" .")
    if len(title) > max_length:
        title = title[: max_length - 3].rstrip() + "..."
    return title


def link_components(count: int, links: Sequence[tuple[int, int]]) -> list[int]:
    """Union-find over index pairs; returns the smallest index of each index's component."""
    parent = list(range(count))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for a, b in links:
        root_a, root_b = find(a), find(b)
        if root_a != root_b:
            parent[max(root_a, root_b)] = min(root_a, root_b)

    return [find(i) for i in range(count)]


class SimilarityClusterer:
    """
    Deterministic embedding-distance clusterer.

    Usage:
        clusterer = SimilarityClusterer(threshold=0.75)
        atoms, clusters = clusterer.cluster(atoms, embeddings)
    """

    def __init__(self, threshold: float = 0.75, title_length: int = 60) -> None:
        """
        Initialize the clusterer.

        Args:
            threshold: Minimum cosine similarity to join an existing cluster
            title_length: Maximum cluster title length
        """
        self.threshold = threshold
        self.title_length = title_length

    def group(
        self,
        embeddings: Sequence[Sequence[float] | None],
        links: Sequence[tuple[int, int]] = (),
    ) -> list[list[int]]:
        """
        Partition atom indices into groups.

        Args:
            embeddings: One embedding (or None) per atom
            links: Index pairs the extractor related; linked embedded atoms
                always share a group

        Returns:
            Groups of indices in formation order; unembedded indices form the
            last group.
        """
        roots = link_components(len(embeddings), links)
        placed: dict[int, int] = {}
        groups: list[list[int]] = []
        centroid_sums: list[np.ndarray] = []
        unembedded: list[int] = []

        for index, embedding in enumerate(embeddings):
            if embedding is None:
                unembedded.append(index)
                continue

            vector = np.asarray(embedding, dtype=float)
            best_group = placed.get(roots[index])

            if best_group is None:
                best_score = self.threshold
                for group_index, centroid_sum in enumerate(centroid_sums):
                    score = cosine_similarity(vector, centroid_sum / len(groups[group_index]))
                    if score > best_score or (best_group is None and score >= best_score):
                        best_group, best_score = group_index, score

            if best_group is None:
                best_group = len(groups)
                groups.append([index])
                centroid_sums.append(vector.copy())
            else:
                groups[best_group].append(index)
                centroid_sums[best_group] = centroid_sums[best_group] + vector
            placed.setdefault(roots[index], best_group)

        if unembedded:
            groups.append(unembedded)
        return groups

    def cluster(
        self,
        atoms: Sequence[Atom],
        embeddings: Sequence[Sequence[float] | None],
        source_document_id: str | None = None,
        links: Sequence[tuple[int, int]] = (),
    ) -> tuple[list[Atom], list[Cluster]]:
        """
        Build pending clusters for one ingestion batch.

        Args:
            atoms: Staging atoms of one capsule, in extraction order
            embeddings: One embedding (or None) per atom
            source_document_id: Knowledge source that produced the batch
            links: Index pairs of related atoms (see ``group``)

        Returns:
            (atoms carrying their cluster_id, clusters)
        """
        if len(atoms) != len(embeddings):
            raise ValueError("atoms and embeddings must have the same length")
        if not atoms:
            return [], []

        assigned = list(atoms)
        clusters: list[Cluster] = []
        has_unembedded = any(e is None for e in embeddings)
        groups = self.group(embeddings, links)

        for position, indices in enumerate(groups):
            members = [atoms[i] for i in indices]
            is_fallback = has_unembedded and position == len(groups) - 1
            cluster = Cluster(
                capsule_id=members[0].capsule_id,
                source_document_id=source_document_id,
                title=UNCLUSTERED_TITLE if is_fallback else cluster_title(members, self.title_length),
                summary=summarize_kinds(members),
                item_ids=tuple(atom.id for atom in members),
                confidence=round(sum(atom.confidence for atom in members) / len(members)),
            )
            clusters.append(cluster)
            for i in indices:
                assigned[i] = atoms[i].model_copy(update={"cluster_id": cluster.id})

        logger.info(
            f"Grouped {len(atoms)} atoms into {len(clusters)} clusters "
            f"(threshold={self.threshold})"
        )
        return assigned, clusters
