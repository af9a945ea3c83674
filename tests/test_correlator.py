"""
Tests for Conflict Correlation.

Covers the heuristic judge's verdicts, the LLM judge's output handling and
how the correlator turns verdicts into annotations and relations.
"""

import asyncio
import json

import pytest

from knowledge_core.ingestion.correlator import (
    ConflictCorrelator,
    HeuristicConflictJudge,
    JudgeError,
    LLMConflictJudge,
    Verdict,
)
from knowledge_core.knowledge.schemas import (
    AIAction,
    AtomKind,
    AtomLayer,
    AtomStatus,
    RelationType,
)
from tests.conftest import FakeLLM, SlowEmbedder, TopicEmbedder, make_atom


def canonical(statement: str, kind: AtomKind = AtomKind.FACT, **fields):
    return make_atom(statement, kind, capsule_id="cap-seed", layer=AtomLayer.CANONICAL, **fields)


class FailingJudge:
    async def judge(self, new, existing, similarity):
        raise RuntimeError("judge offline")


@pytest.fixture
def judge() -> HeuristicConflictJudge:
    return HeuristicConflictJudge()


# ============================================================================
# Heuristic Judge
# ============================================================================


class TestHeuristicJudge:
    """Tests for lexical conflict and duplicate detection."""

    @pytest.mark.asyncio
    async def test_different_numbers_conflict(self, judge: HeuristicConflictJudge) -> None:
        existing = canonical("API latency must stay under 100ms.", AtomKind.REQUIREMENT)
        new = make_atom("API latency must stay under 250ms.", AtomKind.REQUIREMENT)

        judgement = await judge.judge(new, existing, 0.0)

        assert judgement.verdict is Verdict.CONFLICT
        assert "values differ" in judgement.reasoning
        assert str(existing.id) in judgement.reasoning

    @pytest.mark.asyncio
    async def test_substituted_term_conflicts(self, judge: HeuristicConflictJudge) -> None:
        """Same decision, different technology."""
        existing = canonical("We decided to use MySQL for the primary database.", AtomKind.DECISION)
        new = make_atom("We decided to use PostgreSQL for the primary database.", AtomKind.DECISION)

        judgement = await judge.judge(new, existing, 0.0)

        assert judgement.verdict is Verdict.CONFLICT
        assert "'postgresql' replaces 'mysql'" in judgement.reasoning

    @pytest.mark.asyncio
    async def test_negation_conflicts(self, judge: HeuristicConflictJudge) -> None:
        existing = canonical("The service stores PII.")
        new = make_atom("The service does not store PII.")

        judgement = await judge.judge(new, existing, 0.0)

        assert judgement.verdict is Verdict.CONFLICT
        assert "negation" in judgement.reasoning

    @pytest.mark.asyncio
    async def test_identical_is_duplicate(self, judge: HeuristicConflictJudge) -> None:
        existing = canonical("The cache is warmed at startup.")
        new = make_atom("The cache is warmed at startup.")

        judgement = await judge.judge(new, existing, 0.0)

        assert judgement.verdict is Verdict.DUPLICATE
        assert judgement.confidence == 100

    @pytest.mark.asyncio
    async def test_close_embedding_on_shared_subject_is_duplicate(
        self, judge: HeuristicConflictJudge
    ) -> None:
        existing = canonical("The cache is warmed at startup.")
        new = make_atom("The cache gets warmed during startup.")

        judgement = await judge.judge(new, existing, 0.99)

        assert judgement.verdict is Verdict.DUPLICATE

    @pytest.mark.asyncio
    async def test_close_embedding_without_shared_subject(
        self, judge: HeuristicConflictJudge
    ) -> None:
        """Embedding similarity alone is not enough to call a duplicate."""
        existing = canonical("API latency must stay under 100ms.")
        new = make_atom("Redis caches sessions.")

        judgement = await judge.judge(new, existing, 0.99)

        assert judgement.verdict is Verdict.NONE

    @pytest.mark.asyncio
    async def test_opposed_but_unrelated(self, judge: HeuristicConflictJudge) -> None:
        """Opposition on a different subject is not a conflict."""
        existing = canonical("API latency must stay under 100ms.")
        new = make_atom("Audit logs are never deleted.")

        judgement = await judge.judge(new, existing, 0.0)

        assert judgement.verdict is Verdict.NONE


# ============================================================================
# LLM Judge
# ============================================================================


class TestLLMJudge:
    @pytest.mark.asyncio
    async def test_verdict_parsed(self) -> None:
        existing = canonical("We decided to use MySQL.", AtomKind.DECISION)
        new = make_atom("We decided to use PostgreSQL.", AtomKind.DECISION)
        llm = FakeLLM(
            json.dumps({"verdict": "conflict", "confidence": 88, "reasoning": "Different databases."})
        )

        judgement = await LLMConflictJudge(llm).judge(new, existing, 0.8)

        assert judgement.verdict is Verdict.CONFLICT
        assert judgement.confidence == 88
        assert judgement.reasoning.startswith("Different databases.")
        assert str(existing.id) in judgement.reasoning
        assert "PostgreSQL" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_invalid_verdict(self) -> None:
        llm = FakeLLM(json.dumps({"verdict": "maybe"}))

        with pytest.raises(JudgeError):
            await LLMConflictJudge(llm).judge(make_atom("A."), canonical("B."), 0.5)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        llm = FakeLLM(json.dumps({"verdict": "none"}), delay=1.0)

        with pytest.raises(JudgeError, match="timed out"):
            await LLMConflictJudge(llm, timeout=0.02).judge(make_atom("A."), canonical("B."), 0.5)


# ============================================================================
# Correlator
# ============================================================================


class TestCorrelator:
    """Tests for annotating new atoms against canonical knowledge."""

    @pytest.mark.asyncio
    async def test_conflict_annotated_with_relation(self, judge: HeuristicConflictJudge) -> None:
        existing = canonical("We decided to use MySQL for the primary database.", AtomKind.DECISION)
        new = make_atom("We decided to use PostgreSQL for the primary database.", AtomKind.DECISION)

        atoms, relations = await ConflictCorrelator(judge).correlate([new], [None], [existing])

        assert atoms[0].ai_action is AIAction.CONFLICT_DETECTED
        assert len(atoms[0].ai_reasoning) == 1
        assert len(relations) == 1
        relation = relations[0]
        assert relation.type is RelationType.CONTRADICTS
        assert (relation.from_atom_id, relation.to_atom_id) == (new.id, existing.id)

    @pytest.mark.asyncio
    async def test_duplicate_annotated(self, judge: HeuristicConflictJudge) -> None:
        existing = canonical("The cache is warmed at startup.")
        new = make_atom("The cache is warmed at startup.")

        atoms, relations = await ConflictCorrelator(judge).correlate([new], [None], [existing])

        assert atoms[0].ai_action is AIAction.DUPLICATE_MERGED
        assert [r.type for r in relations] == [RelationType.RELATED]

    @pytest.mark.asyncio
    async def test_conflict_outranks_duplicate(self, judge: HeuristicConflictJudge) -> None:
        """A conflict with any canonical atom wins over a duplicate of another."""
        strict = canonical("API latency must stay under 100ms.", AtomKind.REQUIREMENT)
        relaxed = canonical("API latency must stay under 250ms.", AtomKind.REQUIREMENT)
        new = make_atom("API latency must stay under 250ms.", AtomKind.REQUIREMENT)

        atoms, relations = await ConflictCorrelator(judge).correlate(
            [new], [None], [strict, relaxed]
        )

        assert atoms[0].ai_action is AIAction.CONFLICT_DETECTED
        assert [(r.type, r.to_atom_id) for r in relations] == [
            (RelationType.CONTRADICTS, strict.id)
        ]

    @pytest.mark.asyncio
    async def test_unrelated_untouched(self, judge: HeuristicConflictJudge) -> None:
        new = make_atom("Redis caches sessions.")

        atoms, relations = await ConflictCorrelator(judge).correlate(
            [new], [None], [canonical("API latency must stay under 100ms.")]
        )

        assert atoms == [new]
        assert relations == []

    @pytest.mark.asyncio
    async def test_only_active_canonical_considered(self, judge: HeuristicConflictJudge) -> None:
        """Superseded and staging atoms are not trusted knowledge."""
        retired = canonical(
            "The cache is warmed at startup.",
            status=AtomStatus.SUPERSEDED,
        )
        staged = make_atom("The cache is warmed at startup.")
        new = make_atom("The cache is warmed at startup.")

        atoms, relations = await ConflictCorrelator(judge).correlate([new], [None], [retired, staged])

        assert atoms[0].ai_action is None
        assert relations == []

    @pytest.mark.asyncio
    async def test_failing_judge_is_no_action(self) -> None:
        """Judge errors never fail the batch."""
        new = make_atom("The cache is warmed at startup.")

        atoms, relations = await ConflictCorrelator(FailingJudge()).correlate(
            [new], [None], [canonical("The cache is warmed at startup.")]
        )

        assert atoms == [new]
        assert relations == []

    @pytest.mark.asyncio
    async def test_canonical_embeddings_cached(self, judge: HeuristicConflictJudge) -> None:
        embedder = TopicEmbedder()
        correlator = ConflictCorrelator(judge, embedder)
        trusted = [canonical("PostgreSQL is the primary database."), canonical("Redis is the cache.")]
        new = make_atom("Scaling above 10k TPS is unproven.")
        vector = await embedder.embed(new.statement)

        await correlator.correlate([new], [vector], trusted)
        await correlator.correlate([new], [vector], trusted)

        # one call for the new atom, one per canonical atom
        assert embedder.calls == 3

    @pytest.mark.asyncio
    async def test_slow_canonical_embedding_falls_back_to_overlap(
        self, judge: HeuristicConflictJudge
    ) -> None:
        """A canonical atom the embedder cannot serve in time is still judged."""
        existing = canonical("We decided to use MySQL for the primary database.", AtomKind.DECISION)
        new = make_atom("We decided to use PostgreSQL for the primary database.", AtomKind.DECISION)
        correlator = ConflictCorrelator(
            judge, SlowEmbedder(delay=5.0), embedding_timeout=0.05, embedding_retries=0
        )

        atoms, relations = await asyncio.wait_for(
            correlator.correlate([new], [[1.0, 0.0]], [existing]), timeout=1.0
        )

        assert atoms[0].ai_action is AIAction.CONFLICT_DETECTED
        assert [r.to_atom_id for r in relations] == [existing.id]
        assert existing.id not in correlator._canonical_embeddings

    @pytest.mark.asyncio
    async def test_candidate_limit(self) -> None:
        """Only the closest canonical atoms are judged."""
        calls = []

        class RecordingJudge(HeuristicConflictJudge):
            async def judge(self, new, existing, similarity):
                calls.append(existing.statement)
                return await super().judge(new, existing, similarity)

        trusted = [
            canonical("The cache is warmed at startup."),
            canonical("Audit logs are kept forever."),
            canonical("Invoices are emailed monthly."),
        ]
        new = make_atom("The cache is warmed lazily.")

        await ConflictCorrelator(RecordingJudge(), candidate_limit=1).correlate([new], [None], trusted)

        assert calls == ["The cache is warmed at startup."]
