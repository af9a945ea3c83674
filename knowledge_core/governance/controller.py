"""
Governance Controller - Promotion and Rejection of Staged Knowledge.

The only component allowed to move knowledge between trust layers. Every
command is a single atomic store transition; deciding a cluster twice is an
idempotent replay, not an error.
"""

from collections.abc import Sequence
from uuid import UUID

from knowledge_core.governance.schemas import GovernanceResult
from knowledge_core.knowledge.schemas import (
    Atom,
    AtomKind,
    AtomLayer,
    ClusterDecision,
    DaciRoles,
    DecisionMatrix,
    Relation,
    RelationType,
)
from knowledge_core.knowledge.store import ClusterAlreadyDecided, KnowledgeStore
from knowledge_core.utils.logger import LogContext, get_logger

logger = get_logger(__name__)


class GovernanceController:
    """
    Applies review decisions to staged clusters.

    Usage:
        controller = GovernanceController(store)
        result = controller.promote(cluster_id)
        if result.replayed:
            print(f"Already {result.decision.value}")
    """

    def __init__(self, store: KnowledgeStore) -> None:
        self.store = store

    def promote(self, cluster_id: UUID) -> GovernanceResult:
        """
        Move every atom of a pending cluster from staging to canonical.

        Raises:
            ClusterNotFound: Unknown cluster
            StoreWriteConflict: Cluster lock not acquired in time
        """
        return self._decide(cluster_id, ClusterDecision.PROMOTED)

    def reject(self, cluster_id: UUID) -> GovernanceResult:
        """
        Remove every atom of a pending cluster, and their relations.

        Raises:
            ClusterNotFound: Unknown cluster
            StoreWriteConflict: Cluster lock not acquired in time
        """
        return self._decide(cluster_id, ClusterDecision.REJECTED)

    def _decide(self, cluster_id: UUID, decision: ClusterDecision) -> GovernanceResult:
        with LogContext(logger, cluster_id=str(cluster_id)):
            try:
                cluster = self.store.transition_cluster(cluster_id, decision)
            except ClusterAlreadyDecided as e:
                logger.info(
                    f"Cluster {cluster_id} already {e.decision.value}; "
                    f"replaying instead of {decision.value}"
                )
                return GovernanceResult(cluster_id=cluster_id, decision=e.decision, replayed=True)

            logger.info(f"Cluster {cluster_id} {decision.value}")
            return GovernanceResult(cluster_id=cluster.id, decision=cluster.decision)

    def author_atom(
        self,
        capsule_id: str,
        statement: str,
        kind: AtomKind,
        confidence: int = 100,
        source_name: str | None = None,
        daci_roles: DaciRoles | None = None,
        decision_matrix: DecisionMatrix | None = None,
        related_to: Sequence[tuple[UUID, RelationType]] = (),
    ) -> Atom:
        """
        Author an atom directly into the exploratory layer.

        Args:
            related_to: (existing atom id, relation type) pairs; relations
                point from the new atom to the existing one

        Raises:
            StoreIntegrityError: If a related atom does not exist
            ValueError: If the atom itself is invalid
        """
        atom = Atom(
            capsule_id=capsule_id,
            statement=statement.strip(),
            kind=kind,
            confidence=confidence,
            layer=AtomLayer.EXPLORATORY,
            source_name=source_name,
            daci_roles=daci_roles,
            decision_matrix=decision_matrix,
        )
        relations = [
            Relation(from_atom_id=atom.id, to_atom_id=target_id, type=relation_type)
            for target_id, relation_type in related_to
        ]
        return self.store.author(atom, relations)

    def supersede_atom(self, atom_id: UUID, replacement_id: UUID | None = None) -> Atom:
        """
        Retire an active canonical or exploratory atom, keeping it as history.

        Raises:
            AtomNotFound: Unknown atom or replacement
            InvalidTransition: Atom already superseded
            StoreIntegrityError: Atom still awaiting review in staging
        """
        return self.store.supersede(atom_id, replacement_id)
