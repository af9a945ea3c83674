"""
Query Service - Read-only Projections of the Knowledge Store.

Every query works on one store snapshot, so a response never mixes states
from before and after a concurrent promotion or rejection.
"""

from collections import Counter
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from knowledge_core.governance.schemas import (
    ClusterView,
    ClusterViewFilter,
    EntityView,
    KnowledgeItemFilter,
    KnowledgeItemPage,
    KnowledgeItemView,
    RelatedItemView,
    RelationView,
    ViewStatus,
)
from knowledge_core.ingestion.progress import IngestionTracker
from knowledge_core.ingestion.schemas import IngestionStatus
from knowledge_core.knowledge.schemas import Atom, AtomStatus, ClusterDecision
from knowledge_core.knowledge.store import (
    AtomFilter,
    AtomNotFound,
    ClusterFilter,
    KnowledgeStore,
    Page,
    StoreSnapshot,
)
from knowledge_core.utils.logger import get_logger

logger = get_logger(__name__)

IMPORTED_SOURCE_NAME = "Imported Spec"
MANUAL_SOURCE_NAME = "Manual Entry"
RELATED_TITLE_LENGTH = 50


class QueryValidationError(ValueError):
    """Raised when a filter or page request is malformed."""

    pass


def view_status(atom: Atom) -> ViewStatus:
    if atom.status is AtomStatus.SUPERSEDED:
        return ViewStatus.SUPERSEDED
    return ViewStatus(atom.layer.value)


def source_label(atom: Atom) -> str:
    if atom.source_name:
        return atom.source_name
    return IMPORTED_SOURCE_NAME if atom.source_document_id else MANUAL_SOURCE_NAME


def truncate(text: str, length: int) -> str:
    """First ``length`` characters, with an ellipsis only when something was cut."""
    return text[:length] + ("..." if len(text) > length else "")


def _validate(model: type, data: Any) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise QueryValidationError(str(e)) from e


class QueryService:
    """
    Read API over the knowledge store and ingestion tracker.

    Usage:
        queries = QueryService(store, tracker)
        page = queries.list_knowledge_items({"layer": "staging"}, {"limit": 20})
        clusters = queries.list_clusters({"knowledge_source_id": source_id})
    """

    def __init__(
        self,
        store: KnowledgeStore,
        tracker: IngestionTracker | None = None,
        default_page_limit: int = 20,
        max_page_limit: int = 100,
    ) -> None:
        self.store = store
        self.tracker = tracker or IngestionTracker()
        self.default_page_limit = default_page_limit
        self.max_page_limit = max_page_limit

    # ------------------------------------------------------------------
    # Knowledge items
    # ------------------------------------------------------------------

    def list_knowledge_items(
        self,
        item_filter: KnowledgeItemFilter | Mapping[str, Any] | None = None,
        page: Page | Mapping[str, Any] | None = None,
    ) -> KnowledgeItemPage:
        """
        List atoms as knowledge items.

        ``counts`` aggregates matches per view status before the status filter
        is applied, for filter chips.

        Raises:
            QueryValidationError: Malformed filter or page
        """
        criteria: KnowledgeItemFilter = _validate(KnowledgeItemFilter, item_filter)
        window = self._page(page)

        snapshot = self.store.snapshot()
        atoms, _ = snapshot.list_atoms(
            AtomFilter(capsule_id=criteria.capsule_id, layer=criteria.layer)
        )

        if criteria.q:
            needle = criteria.q.strip().lower()
            atoms = [
                atom
                for atom in atoms
                if needle in atom.statement.lower() or needle in source_label(atom).lower()
            ]

        counts = Counter(view_status(atom).value for atom in atoms)
        if criteria.status is not None:
            atoms = [atom for atom in atoms if view_status(atom) is criteria.status]

        return KnowledgeItemPage(
            items=[self._item_view(atom, snapshot) for atom in window.apply(atoms)],
            total=len(atoms),
            counts={status.value: counts.get(status.value, 0) for status in ViewStatus},
            offset=window.offset,
            limit=window.limit,
        )

    def get_knowledge_item(self, atom_id: UUID) -> KnowledgeItemView:
        """
        One atom as a knowledge item.

        Raises:
            AtomNotFound: Unknown atom
        """
        snapshot = self.store.snapshot()
        atom = snapshot.get_atom(atom_id)
        if atom is None:
            raise AtomNotFound(atom_id)
        return self._item_view(atom, snapshot)

    def get_relations_for(self, atom_id: UUID) -> list[RelationView]:
        """
        Outgoing then incoming relations of an atom.

        Raises:
            AtomNotFound: Unknown atom
        """
        return [
            RelationView(
                id=relation.id,
                from_id=relation.from_atom_id,
                to_id=relation.to_atom_id,
                type=relation.type,
                confidence=relation.confidence,
                direction="outgoing" if relation.from_atom_id == atom_id else "incoming",
            )
            for relation in self.store.get_relations_for(atom_id)
        ]

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def list_clusters(
        self,
        cluster_filter: ClusterViewFilter | Mapping[str, Any] | None = None,
    ) -> list[ClusterView]:
        """
        List review clusters with their member atoms.

        Members removed by a rejection are omitted from ``items``.

        Raises:
            QueryValidationError: Malformed filter
        """
        criteria: ClusterViewFilter = _validate(ClusterViewFilter, cluster_filter)
        snapshot = self.store.snapshot()
        clusters = snapshot.list_clusters(
            ClusterFilter(
                capsule_id=criteria.capsule_id,
                source_document_id=criteria.knowledge_source_id,
                decision=criteria.decision,
            )
        )

        views: list[ClusterView] = []
        for cluster in clusters:
            members = [snapshot.get_atom(atom_id) for atom_id in cluster.item_ids]
            views.append(
                ClusterView(
                    id=cluster.id,
                    title=cluster.title,
                    summary=cluster.summary,
                    items=[self._item_view(atom, snapshot) for atom in members if atom is not None],
                    promoted=cluster.decision is ClusterDecision.PROMOTED,
                    rejected=cluster.decision is ClusterDecision.REJECTED,
                    decision=cluster.decision,
                    confidence=cluster.confidence,
                    capsule_id=cluster.capsule_id,
                    knowledge_source_id=cluster.source_document_id,
                    created_at=cluster.created_at,
                    decided_at=cluster.decided_at,
                )
            )
        return views

    # ------------------------------------------------------------------
    # Knowledge sources
    # ------------------------------------------------------------------

    def list_entities(self, q: str | None = None) -> list[EntityView]:
        """One entity per knowledge source that still has atoms or clusters."""
        snapshot = self.store.snapshot()
        entities: dict[str, EntityView] = {}

        for atom in snapshot.atoms():
            key = atom.source_document_id or f"manual:{atom.capsule_id}"
            entity = entities.setdefault(
                key,
                EntityView(id=key, name=source_label(atom), capsule_id=atom.capsule_id),
            )
            entity.atom_count += 1
            status = view_status(atom).value
            entity.counts[status] = entity.counts.get(status, 0) + 1

        for cluster in snapshot.list_clusters():
            if cluster.source_document_id is None:
                continue
            entity = entities.setdefault(
                cluster.source_document_id,
                EntityView(
                    id=cluster.source_document_id,
                    name=IMPORTED_SOURCE_NAME,
                    capsule_id=cluster.capsule_id,
                ),
            )
            entity.cluster_count += 1

        for status in self.tracker.list_sources():
            entity = entities.get(status.source_document_id)
            if entity is not None and status.source_name:
                entity.name = status.source_name

        results = list(entities.values())
        if q:
            needle = q.strip().lower()
            results = [e for e in results if needle in e.name.lower() or needle in e.capsule_id.lower()]
        return results

    def get_ingestion_status(self, capsule_id: str) -> IngestionStatus:
        """
        Latest ingestion status of a capsule.

        Raises:
            IngestionNotFound: If the capsule was never ingested
        """
        return self.tracker.get_status(capsule_id)

    def list_knowledge_sources(self) -> list[IngestionStatus]:
        return self.tracker.list_sources()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _page(self, page: Page | Mapping[str, Any] | None) -> Page:
        if isinstance(page, Page):
            window = page
        else:
            raw = dict(page or {})
            offset = raw.get("offset", 0)
            limit = raw.get("limit", self.default_page_limit)
            if not isinstance(offset, int) or isinstance(offset, bool):
                raise QueryValidationError("offset must be an integer")
            if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool)):
                raise QueryValidationError("limit must be an integer")
            try:
                window = Page(offset=offset, limit=limit)
            except ValueError as e:
                raise QueryValidationError(str(e)) from e

        if window.limit is not None and window.limit > self.max_page_limit:
            raise QueryValidationError(f"limit must be <= {self.max_page_limit}")
        return window

    @staticmethod
    def _item_view(atom: Atom, snapshot: StoreSnapshot) -> KnowledgeItemView:
        related: list[RelatedItemView] = []
        for relation in snapshot.outgoing_relations(atom.id):
            target = snapshot.get_atom(relation.to_atom_id)
            if target is None:
                continue
            related.append(
                RelatedItemView(
                    id=target.id,
                    type=target.kind,
                    relation=relation.type,
                    title=truncate(target.statement, RELATED_TITLE_LENGTH),
                )
            )

        return KnowledgeItemView(
            id=atom.id,
            type=atom.kind,
            content=atom.statement,
            status=view_status(atom),
            layer=atom.layer,
            source_name=source_label(atom),
            source_id=atom.source_document_id,
            capsule_id=atom.capsule_id,
            confidence=atom.confidence,
            cluster_id=atom.cluster_id,
            superseded_by=atom.superseded_by,
            related_items=related,
            ai_action=atom.ai_action,
            ai_reasoning=list(atom.ai_reasoning),
            daci=atom.daci_roles,
            decision_matrix=atom.decision_matrix,
            date_discovered=atom.created_at,
        )
