"""
Conflict Correlator - New Atoms vs. Canonical Knowledge.

Compares every freshly extracted atom with the active canonical atoms it
most resembles and asks a ConflictJudge for a verdict:
1. conflict  -> ``contradicts`` relation + ``conflict-detected`` annotation
2. duplicate -> ``related`` relation + ``duplicate-merged`` annotation
3. none      -> untouched

Conflict outranks duplicate. A failing judge is logged and counts as "none";
correlation never fails a batch.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError

from knowledge_core.ingestion.embedder import Embedder, EmbeddingFailure, embed_one
from knowledge_core.ingestion.extractor import parse_json_response
from knowledge_core.knowledge.schemas import (
    AIAction,
    Atom,
    AtomLayer,
    AtomStatus,
    Relation,
    RelationType,
)
from knowledge_core.knowledge.similarity import (
    content_tokens,
    cosine_similarity,
    is_negated,
    jaccard,
    numbers_in,
)
from knowledge_core.utils.logger import get_logger

logger = get_logger(__name__)


class JudgeError(Exception):
    """Raised when a judge cannot produce a verdict."""

    pass


class Verdict(str, Enum):
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"
    NONE = "none"


@dataclass(frozen=True)
class Judgement:
    """A judge's verdict on one (new atom, canonical atom) pair."""

    verdict: Verdict
    reasoning: str = ""
    confidence: int = 80


NO_ACTION = Judgement(Verdict.NONE)


class ConflictJudge(Protocol):
    """Classifies a pair of atoms as conflicting, duplicate, or unrelated."""

    async def judge(self, new: Atom, existing: Atom, similarity: float) -> Judgement: ...


# ============================================================================
# Heuristic Judge
# ============================================================================


def _subject_tokens(statement: str) -> set[str]:
    return {t for t in content_tokens(statement) if not any(ch.isdigit() for ch in t)}


class HeuristicConflictJudge:
    """
    Lexical judge that needs no model.

    Two statements share a subject when their non-numeric content tokens
    overlap by at least ``subject_threshold``. A shared subject plus any
    opposition (negation polarity, different numbers, or a term substituted
    in an otherwise matching statement of the same kind) is a conflict.
    Near-identical wording, or a near-identical embedding on a shared
    subject, without opposition is a duplicate.
    """

    def __init__(
        self,
        subject_threshold: float = 0.4,
        duplicate_threshold: float = 0.9,
        duplicate_cosine_threshold: float = 0.97,
        substitution_overlap: float = 0.6,
        max_substituted_terms: int = 2,
    ) -> None:
        self.subject_threshold = subject_threshold
        self.duplicate_threshold = duplicate_threshold
        self.duplicate_cosine_threshold = duplicate_cosine_threshold
        self.substitution_overlap = substitution_overlap
        self.max_substituted_terms = max_substituted_terms

    async def judge(self, new: Atom, existing: Atom, similarity: float) -> Judgement:
        subject_new = _subject_tokens(new.statement)
        subject_old = _subject_tokens(existing.statement)
        subject_overlap = jaccard(subject_new, subject_old)

        opposition = self._opposition(new, existing, subject_new, subject_old, subject_overlap)
        if opposition and subject_overlap >= self.subject_threshold:
            return Judgement(
                Verdict.CONFLICT,
                f"Conflicts with canonical atom {existing.id}: {opposition}.",
                confidence=round(50 + 50 * subject_overlap),
            )

        if opposition:
            return NO_ACTION

        overlap = jaccard(content_tokens(new.statement), content_tokens(existing.statement))
        if overlap >= self.duplicate_threshold or (
            similarity >= self.duplicate_cosine_threshold
            and subject_overlap >= self.subject_threshold
        ):
            return Judgement(
                Verdict.DUPLICATE,
                f"Near-duplicate of canonical atom {existing.id} "
                f"(token overlap {overlap:.2f}, similarity {similarity:.2f}).",
                confidence=round(100 * max(overlap, min(similarity, 1.0))),
            )

        return NO_ACTION

    def _opposition(
        self,
        new: Atom,
        existing: Atom,
        subject_new: set[str],
        subject_old: set[str],
        subject_overlap: float,
    ) -> str | None:
        if is_negated(new.statement) != is_negated(existing.statement):
            return "negation polarity differs"

        numbers_new = numbers_in(new.statement)
        numbers_old = numbers_in(existing.statement)
        if numbers_new and numbers_old and numbers_new != numbers_old:
            return (
                f"values differ ({', '.join(sorted(numbers_new))} vs "
                f"{', '.join(sorted(numbers_old))})"
            )

        only_new = subject_new - subject_old
        only_old = subject_old - subject_new
        if (
            new.kind is existing.kind
            and subject_overlap >= self.substitution_overlap
            and 0 < len(only_new) <= self.max_substituted_terms
            and 0 < len(only_old) <= self.max_substituted_terms
        ):
            return f"'{' '.join(sorted(only_new))}' replaces '{' '.join(sorted(only_old))}'"

        return None


# ============================================================================
# LLM Judge
# ============================================================================

CONFLICT_JUDGE_PROMPT = """You are reviewing new knowledge against the trusted knowledge base.

## New statement ({new_kind}):
{new_statement}

## Trusted statement ({existing_kind}):
{existing_statement}

## Your Task:
Decide whether the new statement:
- **conflict**: cannot be true at the same time as the trusted statement
- **duplicate**: says the same thing as the trusted statement
- **none**: is compatible and adds something new

Respond in JSON format:
{{
    "verdict": "conflict" | "duplicate" | "none",
    "confidence": 0-100,
    "reasoning": "One sentence explaining the verdict"
}}
"""


class VerdictOutput(BaseModel):
    """LLM output schema for a judgement."""

    verdict: Verdict
    confidence: int = Field(80, ge=0, le=100)
    reasoning: str = ""


class LLMConflictJudge:
    """
    LLM-backed judge.

    Usage:
        judge = LLMConflictJudge(llm)
        judgement = await judge.judge(new_atom, canonical_atom, 0.82)
    """

    def __init__(self, llm: Any = None, timeout: float = 60.0) -> None:
        self._llm = llm
        self.timeout = timeout

    @property
    def llm(self) -> Any:
        """Get LLM instance."""
        if self._llm is None:
            from knowledge_core.utils.llm_factory import get_llm

            self._llm = get_llm()
        return self._llm

    async def judge(self, new: Atom, existing: Atom, similarity: float) -> Judgement:
        prompt = CONFLICT_JUDGE_PROMPT.format(
            new_kind=new.kind.value,
            new_statement=new.statement,
            existing_kind=existing.kind.value,
            existing_statement=existing.statement,
        )
        try:
            response = await asyncio.wait_for(self.llm.acomplete(prompt), timeout=self.timeout)
            output = VerdictOutput.model_validate(parse_json_response(response.text))
        except TimeoutError as e:
            raise JudgeError(f"Judge timed out after {self.timeout}s") from e
        except (ValueError, ValidationError) as e:
            raise JudgeError(f"Judge returned an invalid verdict: {e}") from e

        reasoning = output.reasoning or f"{output.verdict.value} with canonical atom {existing.id}"
        if existing.id.hex not in reasoning and str(existing.id) not in reasoning:
            reasoning = f"{reasoning} (canonical atom {existing.id})"
        return Judgement(output.verdict, reasoning, output.confidence)


# ============================================================================
# Correlator
# ============================================================================


class ConflictCorrelator:
    """
    Correlates a batch of staging atoms with the canonical layer.

    Candidate canonical atoms are ranked by embedding cosine similarity when
    both sides have an embedding, and by token overlap otherwise; only the
    top ``candidate_limit`` are judged.

    Usage:
        correlator = ConflictCorrelator(HeuristicConflictJudge(), embedder)
        atoms, relations = await correlator.correlate(atoms, embeddings, canonical)
    """

    def __init__(
        self,
        judge: ConflictJudge,
        embedder: Embedder | None = None,
        candidate_limit: int = 10,
        embedding_timeout: float = 30.0,
        embedding_retries: int = 1,
    ) -> None:
        self.judge = judge
        self.embedder = embedder
        self.candidate_limit = candidate_limit
        self.embedding_timeout = embedding_timeout
        self.embedding_retries = embedding_retries
        # Canonical statements never change, so their vectors are reusable.
        self._canonical_embeddings: dict[UUID, list[float]] = {}

    async def correlate(
        self,
        atoms: Sequence[Atom],
        embeddings: Sequence[Sequence[float] | None],
        canonical: Sequence[Atom],
    ) -> tuple[list[Atom], list[Relation]]:
        """
        Annotate atoms that conflict with or duplicate canonical knowledge.

        Args:
            atoms: New staging atoms
            embeddings: One embedding (or None) per new atom
            canonical: Canonical atoms to compare against (inactive ones are skipped)

        Returns:
            (possibly annotated atoms, new relations from new atoms to canonical ones)
        """
        trusted = [
            atom
            for atom in canonical
            if atom.layer is AtomLayer.CANONICAL and atom.status is AtomStatus.ACTIVE
        ]
        if not trusted:
            return list(atoms), []

        await self._embed_canonical(trusted)

        annotated: list[Atom] = []
        relations: list[Relation] = []
        conflicts = duplicates = 0

        for atom, embedding in zip(atoms, embeddings, strict=True):
            ranked = self._rank(atom, embedding, trusted)
            judged = [
                (existing, await self._safe_judge(atom, existing, score))
                for existing, score in ranked
            ]

            conflicting = [(e, j) for e, j in judged if j.verdict is Verdict.CONFLICT]
            duplicate = next(((e, j) for e, j in judged if j.verdict is Verdict.DUPLICATE), None)

            if conflicting:
                conflicts += 1
                atom = atom.annotated(
                    AIAction.CONFLICT_DETECTED, [j.reasoning for _, j in conflicting]
                )
                relations.extend(
                    Relation(
                        from_atom_id=atom.id,
                        to_atom_id=existing.id,
                        type=RelationType.CONTRADICTS,
                        confidence=judgement.confidence,
                    )
                    for existing, judgement in conflicting
                )
            elif duplicate is not None:
                duplicates += 1
                existing, judgement = duplicate
                atom = atom.annotated(AIAction.DUPLICATE_MERGED, [judgement.reasoning])
                relations.append(
                    Relation(
                        from_atom_id=atom.id,
                        to_atom_id=existing.id,
                        type=RelationType.RELATED,
                        confidence=judgement.confidence,
                    )
                )

            annotated.append(atom)

        logger.info(
            f"Correlated {len(atoms)} atoms against {len(trusted)} canonical atoms: "
            f"{conflicts} conflicts, {duplicates} duplicates"
        )
        return annotated, relations

    async def _embed_canonical(self, trusted: Sequence[Atom]) -> None:
        if self.embedder is None:
            return
        for atom in trusted:
            if atom.id in self._canonical_embeddings:
                continue
            try:
                self._canonical_embeddings[atom.id] = await embed_one(
                    self.embedder,
                    atom.statement,
                    timeout=self.embedding_timeout,
                    retries=self.embedding_retries,
                )
            except EmbeddingFailure as e:
                # Ranked by token overlap this batch; retried on the next one.
                logger.warning(f"Canonical atom {atom.id} has no embedding: {e}")

    def _rank(
        self,
        atom: Atom,
        embedding: Sequence[float] | None,
        trusted: Sequence[Atom],
    ) -> list[tuple[Atom, float]]:
        tokens = content_tokens(atom.statement)
        scored: list[tuple[Atom, float]] = []
        for existing in trusted:
            existing_embedding = self._canonical_embeddings.get(existing.id)
            if embedding is not None and existing_embedding is not None:
                score = cosine_similarity(embedding, existing_embedding)
            else:
                score = jaccard(tokens, content_tokens(existing.statement))
            scored.append((existing, score))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[: self.candidate_limit]

    async def _safe_judge(self, new: Atom, existing: Atom, similarity: float) -> Judgement:
        try:
            return await self.judge.judge(new, existing, similarity)
        except Exception as e:
            logger.warning(f"Conflict judge failed on {new.id} vs {existing.id}: {e}")
            return NO_ACTION
