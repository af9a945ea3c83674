"""
Atom Extractors - Unstructured Text to Candidate Atoms.

Two interchangeable strategies behind the ``Extractor`` protocol:
- LLMExtractor: structured JSON output from a llama-index LLM
- RuleBasedExtractor: deterministic, offline, cue-phrase classification

Extraction is all-or-nothing. Malformed output, timeouts and empty results
raise ExtractionFailure; there is no retry.
"""

import asyncio
import json
import re
from typing import Any, Protocol

from pydantic import ValidationError

from knowledge_core.ingestion.schemas import (
    CandidateAtom,
    CandidateRelation,
    ExtractionOutput,
)
from knowledge_core.knowledge.schemas import (
    AtomKind,
    DecisionMatrix,
    Impact,
    RelationType,
    Reversibility,
)
from knowledge_core.utils.logger import get_logger

logger = get_logger(__name__)


class ExtractionFailure(Exception):
    """Raised when text cannot be turned into a valid set of candidate atoms."""

    pass


class Extractor(Protocol):
    """Turns unstructured text into candidate atoms and relations."""

    async def extract(self, text: str, capsule_id: str) -> ExtractionOutput: ...


def _require_text(text: str) -> str:
    stripped = text.strip()
    if not stripped:
        raise ExtractionFailure("Input text is empty")
    return stripped


# ============================================================================
# Rule-Based Extractor
# ============================================================================

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
RISK_PREFIX = re.compile(r"^\s*(?:[-*•]\s*)?risks?\s*:\s*", re.IGNORECASE)
DECISION_CUES = re.compile(r"\b(decided|decision|we will|we chose|chosen|agreed to)\b", re.IGNORECASE)
REQUIREMENT_CUES = re.compile(r"\b(must|shall|should|required|requires|needs? to)\b", re.IGNORECASE)
ASSUMPTION_CUES = re.compile(r"\b(assume|assumes|assuming|assumption|presumably)\b", re.IGNORECASE)
RISK_CUES = re.compile(r"\b(risk|risky|unproven|might fail|may fail)\b", re.IGNORECASE)
IRREVERSIBLE_CUES = re.compile(r"\b(irreversible|one-way door|permanent(?:ly)?)\b", re.IGNORECASE)

KIND_CONFIDENCE = {
    AtomKind.DECISION: 90,
    AtomKind.RISK: 85,
    AtomKind.REQUIREMENT: 85,
    AtomKind.ASSUMPTION: 70,
    AtomKind.FACT: 75,
}


class RuleBasedExtractor:
    """
    Deterministic sentence-level extractor.

    Each sentence becomes one atom whose kind is chosen by cue phrases.
    A risk or assumption that directly follows a decision is linked to it
    with a ``related`` relation.

    Usage:
        extractor = RuleBasedExtractor()
        output = await extractor.extract("We decided to use PostgreSQL.", "cap-1")
    """

    def __init__(self, min_statement_length: int = 3) -> None:
        self.min_statement_length = min_statement_length

    async def extract(self, text: str, capsule_id: str) -> ExtractionOutput:
        sentences = [s for s in SENTENCE_SPLIT.split(_require_text(text)) if s.strip()]

        atoms: list[CandidateAtom] = []
        relations: list[CandidateRelation] = []

        for sentence in sentences:
            candidate = self._classify(sentence)
            if candidate is None:
                continue
            index = len(atoms)
            if (
                index > 0
                and candidate.kind in (AtomKind.RISK, AtomKind.ASSUMPTION)
                and atoms[index - 1].kind is AtomKind.DECISION
            ):
                relations.append(
                    CandidateRelation(
                        from_index=index,
                        to_index=index - 1,
                        type=RelationType.RELATED,
                        confidence=60,
                    )
                )
            atoms.append(candidate)

        if not atoms:
            raise ExtractionFailure("No statements found in input text")

        logger.debug(f"Rule extractor found {len(atoms)} atoms for capsule '{capsule_id}'")
        return ExtractionOutput(atoms=atoms, relations=relations)

    def _classify(self, sentence: str) -> CandidateAtom | None:
        statement = sentence.strip()

        if RISK_PREFIX.match(statement):
            statement = RISK_PREFIX.sub("", statement)
            kind = AtomKind.RISK
            if statement:
                statement = statement[0].upper() + statement[1:]
        elif DECISION_CUES.search(statement):
            kind = AtomKind.DECISION
        elif REQUIREMENT_CUES.search(statement):
            kind = AtomKind.REQUIREMENT
        elif ASSUMPTION_CUES.search(statement):
            kind = AtomKind.ASSUMPTION
        elif RISK_CUES.search(statement):
            kind = AtomKind.RISK
        else:
            kind = AtomKind.FACT

        if len(statement.strip(" .!?")) < self.min_statement_length:
            return None

        decision_matrix = None
        if kind is AtomKind.DECISION and IRREVERSIBLE_CUES.search(statement):
            decision_matrix = DecisionMatrix(
                impact=Impact.HIGH,
                reversibility=Reversibility.IRREVERSIBLE,
            )

        return CandidateAtom(
            statement=statement,
            kind=kind,
            confidence=KIND_CONFIDENCE[kind],
            decision_matrix=decision_matrix,
        )


# ============================================================================
# LLM Extractor
# ============================================================================

ATOM_EXTRACTION_PROMPT = """You are an expert knowledge engineer. Break the text below into atomic,
independently-assertable units of knowledge ("atoms") and the relations between them.

## Atom kinds:
- **fact**: something that is true about the system or project
- **decision**: a choice that was made (optionally with DACI roles and a decision matrix)
- **risk**: something that could go wrong
- **assumption**: something taken to be true without proof
- **requirement**: something that must hold

## Relation types (between atoms, by zero-based index into "atoms"):
- **supports**: the first atom backs up the second
- **contradicts**: the first atom is incompatible with the second
- **related**: the atoms concern the same subject

## Text to Analyze:
{text}

## Instructions:
1. One statement per atom, rewritten as a complete sentence
2. confidence is an integer between 0 and 100
3. Only decisions may carry "daci_roles" (driver/approver/contributor/informed name lists)
   and "decision_matrix" (impact: high|low, reversibility: reversible|irreversible)
4. Never relate an atom to itself

Respond with a JSON object:
{{
    "atoms": [{{"statement": "...", "kind": "decision", "confidence": 90}}],
    "relations": [{{"from_index": 1, "to_index": 0, "type": "related", "confidence": 80}}]
}}
"""


def parse_json_response(text: str) -> Any:
    """Parse a JSON payload, tolerating markdown code fences around it."""
    text = text.strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()
    return json.loads(text)


class LLMExtractor:
    """
    LLM-backed extractor with pydantic-validated JSON output.

    Usage:
        extractor = LLMExtractor(llm, timeout=60)
        output = await extractor.extract(text, "cap-1")
    """

    def __init__(self, llm: Any = None, timeout: float = 120.0) -> None:
        """
        Initialize the extractor.

        Args:
            llm: LLM instance (if None, will use default from llm_factory)
            timeout: Per-call timeout in seconds
        """
        self._llm = llm
        self.timeout = timeout

    @property
    def llm(self) -> Any:
        """Get the LLM instance."""
        if self._llm is None:
            from knowledge_core.utils.llm_factory import get_llm

            self._llm = get_llm()
        return self._llm

    async def extract(self, text: str, capsule_id: str) -> ExtractionOutput:
        prompt = ATOM_EXTRACTION_PROMPT.format(text=_require_text(text))

        try:
            response = await asyncio.wait_for(
                self.llm.acomplete(prompt + "\n\nRespond with valid JSON only:"),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise ExtractionFailure(f"Extraction timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error(f"Extractor backend failed: {e}")
            raise ExtractionFailure(f"Extractor backend error: {type(e).__name__}: {e}") from e

        try:
            output = ExtractionOutput.model_validate(parse_json_response(response.text))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse extractor output as JSON: {e}")
            raise ExtractionFailure(f"Extractor returned invalid JSON: {e}") from e
        except ValidationError as e:
            logger.error(f"Extractor output failed validation: {e}")
            raise ExtractionFailure(f"Extractor output failed validation: {e}") from e

        if not output.atoms:
            raise ExtractionFailure("Extractor returned no atoms")

        logger.info(
            f"LLM extracted {len(output.atoms)} atoms, {len(output.relations)} relations "
            f"for capsule '{capsule_id}'"
        )
        return output
