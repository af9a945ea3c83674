"""
Ingestion Pipeline - Text to Staged Knowledge.

Runs one batch through the stages in order:
1. extraction      - text -> candidate atoms and relations
2. embedding       - one vector per atom (failures fall back to "Unclustered")
3. clustering      - atoms -> pending review clusters
4. conflictChecks  - correlation against canonical knowledge, then commit

Each stage reports ``{stage, state}`` progress. Nothing touches the store
before the final commit, so a failed or cancelled batch leaves no trace.
A commit that has started always finishes; a stream closed after it
reports the batch as complete.
"""

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING
from uuid import uuid4

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_core.ingestion.clusterer import SimilarityClusterer
from knowledge_core.ingestion.correlator import ConflictCorrelator, HeuristicConflictJudge
from knowledge_core.ingestion.embedder import Embedder, embed_statements
from knowledge_core.ingestion.extractor import ExtractionFailure, Extractor
from knowledge_core.ingestion.progress import IngestionTracker
from knowledge_core.ingestion.schemas import (
    ExtractionOutput,
    IngestionResult,
    PipelineStage,
    ProgressEvent,
    ProgressSignal,
    StageState,
)
from knowledge_core.knowledge.schemas import (
    AIAction,
    Atom,
    AtomLayer,
    AtomStatus,
    Cluster,
    Relation,
    RelationType,
)
from knowledge_core.knowledge.store import (
    AtomFilter,
    KnowledgeStore,
    StoreWriteConflict,
)
from knowledge_core.utils.logger import LogContext, get_logger

if TYPE_CHECKING:
    from app.config import Settings

logger = get_logger(__name__)

BULLET_PREFIX = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
WHITESPACE = re.compile(r"\s+")


def normalize_statement(statement: str) -> str:
    """Collapse whitespace, drop a leading list bullet and capitalize the first letter."""
    text = WHITESPACE.sub(" ", BULLET_PREFIX.sub("", statement)).strip()
    if text and text[0].islower():
        text = text[0].upper() + text[1:]
    return text


class IngestionPipeline:
    """
    Orchestrates extraction, embedding, clustering and conflict checks.

    Usage:
        pipeline = IngestionPipeline(store, extractor, embedder)

        async for event in pipeline.ingest(text, "cap-1"):
            print(event.stage, event.state)

        # or, when only the outcome matters
        result = await pipeline.run(text, "cap-1")
    """

    def __init__(
        self,
        store: KnowledgeStore,
        extractor: Extractor,
        embedder: Embedder,
        clusterer: SimilarityClusterer | None = None,
        correlator: ConflictCorrelator | None = None,
        tracker: IngestionTracker | None = None,
        embedding_timeout: float = 30.0,
        embedding_retries: int = 1,
        commit_retry_attempts: int = 3,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            store: Knowledge store the batch is committed to
            extractor: Atom extraction strategy
            embedder: Statement embedding strategy
            clusterer: Clusterer (default: SimilarityClusterer())
            correlator: Conflict correlator (default: heuristic judge, same embedder)
            tracker: Progress registry (default: a private one)
            embedding_timeout: Per-atom embedding timeout in seconds
            embedding_retries: Retries per atom before it stays unembedded
            commit_retry_attempts: Commit attempts on StoreWriteConflict
        """
        self.store = store
        self.extractor = extractor
        self.embedder = embedder
        self.clusterer = clusterer or SimilarityClusterer()
        self.correlator = correlator or ConflictCorrelator(
            HeuristicConflictJudge(),
            embedder,
            embedding_timeout=embedding_timeout,
            embedding_retries=embedding_retries,
        )
        self.tracker = tracker or IngestionTracker()
        self.embedding_timeout = embedding_timeout
        self.embedding_retries = embedding_retries
        self.commit_retry_attempts = commit_retry_attempts

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        store: KnowledgeStore,
        tracker: IngestionTracker | None = None,
    ) -> "IngestionPipeline":
        """Build a pipeline with the strategies selected in settings."""
        from app.config import ConflictJudgeBackend, ExtractorBackend
        from knowledge_core.ingestion.correlator import LLMConflictJudge
        from knowledge_core.ingestion.embedder import create_embedder
        from knowledge_core.ingestion.extractor import LLMExtractor, RuleBasedExtractor

        if settings.extractor_backend is ExtractorBackend.LLM:
            extractor: Extractor = LLMExtractor(timeout=settings.extraction_timeout_seconds)
        else:
            extractor = RuleBasedExtractor()

        embedder = create_embedder(settings)

        if settings.conflict_judge is ConflictJudgeBackend.LLM:
            judge = LLMConflictJudge(timeout=settings.extraction_timeout_seconds)
        else:
            judge = HeuristicConflictJudge(
                subject_threshold=settings.conflict_subject_threshold,
                duplicate_threshold=settings.duplicate_threshold,
                duplicate_cosine_threshold=settings.duplicate_cosine_threshold,
            )

        return cls(
            store=store,
            extractor=extractor,
            embedder=embedder,
            clusterer=SimilarityClusterer(settings.cluster_similarity_threshold),
            correlator=ConflictCorrelator(
                judge,
                embedder,
                settings.conflict_candidate_limit,
                embedding_timeout=settings.embedding_timeout_seconds,
                embedding_retries=settings.embedding_retries,
            ),
            tracker=tracker,
            embedding_timeout=settings.embedding_timeout_seconds,
            embedding_retries=settings.embedding_retries,
            commit_retry_attempts=settings.commit_retry_attempts,
        )

    async def ingest(
        self,
        text: str,
        capsule_id: str,
        source_name: str | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Run one batch, yielding progress events as stages advance.

        The stream always ends with a ``complete`` or ``error`` event. After an
        ``error`` event the underlying exception (ExtractionFailure,
        StoreWriteConflict, ...) is raised to the consumer.

        Args:
            text: Unstructured input text
            capsule_id: Batch/context grouping for the new atoms
            source_name: Human label of the knowledge source

        Yields:
            ProgressEvent for every stage transition
        """
        source_document_id = str(uuid4())
        self.tracker.start(capsule_id, source_document_id, source_name)

        def event(
            stage: PipelineStage | None = None,
            state: StageState | None = None,
            **fields,
        ) -> ProgressEvent:
            progress = ProgressEvent(
                capsule_id=capsule_id,
                source_document_id=source_document_id,
                stage=stage,
                state=state,
                **fields,
            )
            self.tracker.publish(progress)
            return progress

        current: PipelineStage | None = None
        staged: list[Cluster] = []
        logger.info(f"Ingesting {len(text)} chars into capsule '{capsule_id}'")

        try:
            for stage in PipelineStage:
                yield event(stage, StageState.PENDING)

            # 1. Extraction
            current = PipelineStage.EXTRACTION
            yield event(current, StageState.PROCESSING)
            output = await self.extractor.extract(text, capsule_id)
            atoms = self._build_atoms(output, capsule_id, source_document_id, source_name)
            relations = self._build_relations(output, atoms)
            logger.info(f"Extraction done: {len(atoms)} atoms, {len(relations)} relations")
            yield event(current, StageState.DONE)

            # 2. Embedding
            current = PipelineStage.EMBEDDING
            yield event(current, StageState.PROCESSING)
            embeddings = await embed_statements(
                self.embedder,
                [atom.statement for atom in atoms],
                timeout=self.embedding_timeout,
                retries=self.embedding_retries,
            )
            missing = sum(1 for e in embeddings if e is None)
            if missing:
                logger.warning(f"{missing} atoms could not be embedded")
            yield event(current, StageState.DONE)

            # 3. Clustering
            current = PipelineStage.CLUSTERING
            yield event(current, StageState.PROCESSING)
            links = [
                (candidate.from_index, candidate.to_index)
                for candidate in output.relations
                if candidate.type is not RelationType.CONTRADICTS
            ]
            atoms, clusters = self.clusterer.cluster(
                atoms, embeddings, source_document_id, links
            )
            staged = clusters
            yield event(current, StageState.DONE)

            # 4. Conflict checks, then the single commit
            current = PipelineStage.CONFLICT_CHECKS
            yield event(current, StageState.PROCESSING)
            canonical, _ = self.store.list_atoms(
                AtomFilter(layer=AtomLayer.CANONICAL, status=AtomStatus.ACTIVE)
            )
            atoms, conflict_relations = await self.correlator.correlate(
                atoms, embeddings, canonical
            )
            await self._commit(capsule_id, atoms, relations + conflict_relations, clusters)
            yield event(current, StageState.DONE)

        except (asyncio.CancelledError, GeneratorExit):
            if staged and self.store.get_cluster(staged[0].id) is not None:
                # Closed after the commit landed: the batch is complete.
                logger.info(f"Ingestion of capsule '{capsule_id}' committed before the stream closed")
                event(
                    PipelineStage.CONFLICT_CHECKS,
                    StageState.DONE,
                    signal=ProgressSignal.COMPLETE,
                    cluster_ids=tuple(cluster.id for cluster in staged),
                    atom_count=len(atoms),
                )
                raise
            stage_name = current.value if current else "setup"
            logger.warning(f"Ingestion of capsule '{capsule_id}' cancelled during {stage_name}")
            event(
                current,
                StageState.ERROR if current else None,
                signal=ProgressSignal.ERROR,
                message="Ingestion cancelled",
            )
            raise
        except Exception as e:
            stage_name = current.value if current else "setup"
            logger.error(f"Ingestion of capsule '{capsule_id}' failed during {stage_name}: {e}")
            if current is not None:
                yield event(current, StageState.ERROR, message=str(e))
            yield event(signal=ProgressSignal.ERROR, message=str(e))
            raise

        logger.info(f"Ingestion complete: {len(atoms)} atoms in {len(clusters)} clusters")
        yield event(
            signal=ProgressSignal.COMPLETE,
            cluster_ids=tuple(cluster.id for cluster in clusters),
            atom_count=len(atoms),
        )

    async def run(
        self,
        text: str,
        capsule_id: str,
        source_name: str | None = None,
    ) -> IngestionResult:
        """
        Run one batch to completion.

        Returns:
            IngestionResult with the committed atoms, relations and clusters

        Raises:
            ExtractionFailure: If extraction failed (nothing was committed)
            StoreWriteConflict: If the commit kept conflicting
        """
        events: list[ProgressEvent] = []
        async for progress in self.ingest(text, capsule_id, source_name):
            events.append(progress)

        final = events[-1]
        snapshot = self.store.snapshot()
        clusters = [snapshot.get_cluster(cluster_id) for cluster_id in final.cluster_ids]
        atoms = [
            snapshot.get_atom(atom_id)
            for cluster in clusters
            if cluster is not None
            for atom_id in cluster.item_ids
        ]
        atom_ids = {atom.id for atom in atoms if atom is not None}
        relations = [
            relation
            for relation in snapshot.relations()
            if relation.from_atom_id in atom_ids or relation.to_atom_id in atom_ids
        ]
        return IngestionResult(
            capsule_id=capsule_id,
            source_document_id=final.source_document_id,
            atoms=[atom for atom in atoms if atom is not None],
            relations=relations,
            clusters=[cluster for cluster in clusters if cluster is not None],
            events=events,
        )

    async def _commit(
        self,
        capsule_id: str,
        atoms: Sequence[Atom],
        relations: Sequence[Relation],
        clusters: Sequence[Cluster],
    ) -> None:
        """Commit the batch, retrying on write conflicts."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.commit_retry_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(StoreWriteConflict),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt, LogContext(logger, capsule_id=capsule_id):
                await self._append(atoms, relations, clusters)

    async def _append(
        self,
        atoms: Sequence[Atom],
        relations: Sequence[Relation],
        clusters: Sequence[Cluster],
    ) -> None:
        """
        One commit attempt on a worker thread.

        The store call may wait on a capsule lock and write the JSON file, so
        it stays off the event loop. A started write always runs to the end:
        cancellation is delivered only once it has finished.
        """
        write = asyncio.ensure_future(
            asyncio.to_thread(self.store.append, atoms, relations, clusters)
        )
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait([write])
            if write.exception() is not None:
                logger.warning(f"Commit interrupted by cancellation failed: {write.exception()}")
            raise

    @staticmethod
    def _build_atoms(
        output: ExtractionOutput,
        capsule_id: str,
        source_document_id: str,
        source_name: str | None,
    ) -> list[Atom]:
        atoms: list[Atom] = []
        for candidate in output.atoms:
            statement = normalize_statement(candidate.statement)
            if not statement:
                raise ExtractionFailure("Extractor produced an empty statement")
            atom = Atom(
                capsule_id=capsule_id,
                statement=statement,
                kind=candidate.kind,
                confidence=candidate.confidence,
                source_document_id=source_document_id,
                source_name=source_name,
                daci_roles=candidate.daci_roles,
                decision_matrix=candidate.decision_matrix,
            )
            if statement != candidate.statement.strip():
                atom = atom.annotated(
                    AIAction.AUTO_FIXED,
                    [f"Normalized statement formatting (was: {candidate.statement.strip()!r})."],
                )
            atoms.append(atom)
        return atoms

    @staticmethod
    def _build_relations(output: ExtractionOutput, atoms: Sequence[Atom]) -> list[Relation]:
        return [
            Relation(
                from_atom_id=atoms[candidate.from_index].id,
                to_atom_id=atoms[candidate.to_index].id,
                type=candidate.type,
                confidence=candidate.confidence,
            )
            for candidate in output.relations
        ]
