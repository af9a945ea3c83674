"""
Pytest Configuration and Fixtures.

Fixtures use the real store, extractors, clusterer and correlator. The only
stand-ins are the small in-test embedders and the fake LLM below, which keep
the tests deterministic and offline. Live-backend tests skip when no Ollama
or OpenAI backend is reachable.
"""

import asyncio
import os
from collections.abc import Sequence
from pathlib import Path

import httpx
import pytest

from knowledge_core.ingestion.embedder import EmbeddingFailure, HashingEmbedder
from knowledge_core.ingestion.extractor import RuleBasedExtractor
from knowledge_core.ingestion.pipeline import IngestionPipeline
from knowledge_core.ingestion.progress import IngestionTracker
from knowledge_core.knowledge.schemas import (
    Atom,
    AtomKind,
    Cluster,
    ClusterDecision,
    Relation,
)
from knowledge_core.knowledge.similarity import tokenize
from knowledge_core.knowledge.store import GraphKnowledgeStore

SCENARIO_TEXT = "We decided to use PostgreSQL. Risk: scaling above 10k TPS is unproven."


# ============================================================================
# Skip Markers
# ============================================================================


def _ollama_available() -> bool:
    try:
        response = httpx.get("http://localhost:11434/api/tags", timeout=2.0)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


def requires_llm():
    """Skip test if no LLM backend is available."""
    has_openai = bool(os.getenv("OPENAI_API_KEY"))
    return pytest.mark.skipif(
        not (has_openai or _ollama_available()),
        reason="Requires LLM backend (Ollama or OpenAI)",
    )


def requires_ollama():
    """Skip test if Ollama is not running."""
    return pytest.mark.skipif(
        not _ollama_available(),
        reason="Requires Ollama running on localhost:11434",
    )


# ============================================================================
# Test Doubles
# ============================================================================


class FakeCompletion:
    def __init__(self, text: str) -> None:
        self.text = text


class FakeLLM:
    """Returns canned completions in order (the last one repeats)."""

    def __init__(self, responses: str | Sequence[str], delay: float = 0.0) -> None:
        self.responses = [responses] if isinstance(responses, str) else list(responses)
        self.delay = delay
        self.prompts: list[str] = []

    async def acomplete(self, prompt: str, **kwargs) -> FakeCompletion:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        index = min(len(self.prompts) - 1, len(self.responses) - 1)
        return FakeCompletion(self.responses[index])


TOPICS = {
    "database": {"postgresql", "mysql", "database", "tps", "scaling", "schema", "replica"},
    "api": {"api", "latency", "endpoint", "endpoints", "request", "requests"},
    "security": {"pii", "encryption", "encrypted", "audit", "secrets"},
    "cache": {"cache", "redis", "warmed", "eviction"},
}


class TopicEmbedder:
    """
    Embeds statements by topic keyword counts.

    Statements about the same topic point in the same direction, whatever
    their wording, which makes clustering outcomes easy to predict.
    """

    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.calls = 0

    async def embed(self, statement: str) -> list[float]:
        self.calls += 1
        if self.fail_on and self.fail_on in statement.lower():
            raise EmbeddingFailure(f"cannot embed {statement!r}")
        tokens = tokenize(statement)
        vector = [float(sum(t in words for t in tokens)) for words in TOPICS.values()]
        if not any(vector):
            vector.append(1.0)
        else:
            vector.append(0.0)
        return vector


class SlowEmbedder:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def embed(self, statement: str) -> list[float]:
        await asyncio.sleep(self.delay)
        return [1.0, 0.0]


# ============================================================================
# Factories
# ============================================================================


def make_atom(
    statement: str,
    kind: AtomKind = AtomKind.FACT,
    capsule_id: str = "cap-test",
    **fields,
) -> Atom:
    return Atom(capsule_id=capsule_id, statement=statement, kind=kind, **fields)


def stage_batch(
    store: GraphKnowledgeStore,
    statements: Sequence[str | tuple[str, AtomKind]],
    capsule_id: str = "cap-test",
    source_document_id: str | None = "src-test",
    relations: Sequence[tuple[int, int, str]] = (),
) -> tuple[list[Atom], Cluster]:
    """Append one pending cluster holding the given statements."""
    atoms = []
    for entry in statements:
        statement, kind = entry if isinstance(entry, tuple) else (entry, AtomKind.FACT)
        atoms.append(
            make_atom(
                statement,
                kind,
                capsule_id=capsule_id,
                source_document_id=source_document_id,
            )
        )
    cluster = Cluster(
        capsule_id=capsule_id,
        source_document_id=source_document_id,
        title=atoms[0].statement,
        item_ids=tuple(atom.id for atom in atoms),
    )
    atoms = [atom.model_copy(update={"cluster_id": cluster.id}) for atom in atoms]
    batch_relations = [
        Relation(from_atom_id=atoms[a].id, to_atom_id=atoms[b].id, type=relation_type)
        for a, b, relation_type in relations
    ]
    store.append(atoms, batch_relations, [cluster])
    return atoms, cluster


def seed_canonical(
    store: GraphKnowledgeStore,
    statements: Sequence[str | tuple[str, AtomKind]],
    capsule_id: str = "cap-seed",
) -> list[Atom]:
    """Stage and promote statements so they become canonical knowledge."""
    atoms, cluster = stage_batch(store, statements, capsule_id=capsule_id, source_document_id=None)
    store.transition_cluster(cluster.id, ClusterDecision.PROMOTED)
    return [store.get_atom(atom.id) for atom in atoms]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store() -> GraphKnowledgeStore:
    """Fresh in-memory knowledge store."""
    return GraphKnowledgeStore(lock_timeout=0.2)


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    """Temporary path for store persistence."""
    return tmp_path / "knowledge_store.json"


@pytest.fixture
def tracker() -> IngestionTracker:
    return IngestionTracker()


@pytest.fixture
def rule_extractor() -> RuleBasedExtractor:
    return RuleBasedExtractor()


@pytest.fixture
def topic_embedder() -> TopicEmbedder:
    return TopicEmbedder()


@pytest.fixture
def hashing_embedder() -> HashingEmbedder:
    return HashingEmbedder(dimensions=64)


@pytest.fixture
def pipeline(
    store: GraphKnowledgeStore,
    rule_extractor: RuleBasedExtractor,
    topic_embedder: TopicEmbedder,
    tracker: IngestionTracker,
) -> IngestionPipeline:
    """Offline pipeline: rule extractor, topic embedder, heuristic judge."""
    return IngestionPipeline(
        store=store,
        extractor=rule_extractor,
        embedder=topic_embedder,
        tracker=tracker,
        embedding_timeout=1.0,
        embedding_retries=1,
        commit_retry_attempts=3,
    )
