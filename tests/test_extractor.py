"""
Tests for Atom Extractors.

The rule-based extractor runs as-is; the LLM extractor runs against canned
completions so malformed model output can be exercised deterministically.
"""

import json

import pytest

from knowledge_core.ingestion.extractor import (
    ExtractionFailure,
    LLMExtractor,
    RuleBasedExtractor,
    parse_json_response,
)
from knowledge_core.knowledge.schemas import AtomKind, Impact, RelationType, Reversibility
from tests.conftest import SCENARIO_TEXT, FakeLLM, requires_llm

# ============================================================================
# Rule-Based Extractor
# ============================================================================


class TestRuleBasedExtractor:
    """Tests for cue-phrase extraction."""

    @pytest.mark.asyncio
    async def test_decision_and_risk(self, rule_extractor: RuleBasedExtractor) -> None:
        """A decision followed by a risk yields two linked atoms."""
        output = await rule_extractor.extract(SCENARIO_TEXT, "cap-1")

        assert [(a.kind, a.statement) for a in output.atoms] == [
            (AtomKind.DECISION, "We decided to use PostgreSQL."),
            (AtomKind.RISK, "Scaling above 10k TPS is unproven."),
        ]
        assert output.atoms[0].confidence == 90
        assert len(output.relations) == 1
        relation = output.relations[0]
        assert (relation.from_index, relation.to_index) == (1, 0)
        assert relation.type is RelationType.RELATED

    @pytest.mark.asyncio
    async def test_kinds_by_cue(self, rule_extractor: RuleBasedExtractor) -> None:
        text = (
            "- The API must respond within 200ms.\n"
            "- Assume traffic doubles every year.\n"
            "- The billing service is written in Go."
        )

        output = await rule_extractor.extract(text, "cap-1")

        assert [a.kind for a in output.atoms] == [
            AtomKind.REQUIREMENT,
            AtomKind.ASSUMPTION,
            AtomKind.FACT,
        ]
        assert output.relations == []

    @pytest.mark.asyncio
    async def test_irreversible_decision(self, rule_extractor: RuleBasedExtractor) -> None:
        """One-way-door wording produces a high-impact decision matrix."""
        output = await rule_extractor.extract(
            "We decided to permanently delete the legacy archive.", "cap-1"
        )

        matrix = output.atoms[0].decision_matrix
        assert matrix.impact is Impact.HIGH
        assert matrix.reversibility is Reversibility.IRREVERSIBLE

    @pytest.mark.asyncio
    async def test_short_fragments_skipped(self, rule_extractor: RuleBasedExtractor) -> None:
        output = await rule_extractor.extract("Ok. The cache is warmed at startup.", "cap-1")

        assert [a.statement for a in output.atoms] == ["The cache is warmed at startup."]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   \n\t", "Ok."])
    async def test_nothing_to_extract(self, rule_extractor: RuleBasedExtractor, text: str) -> None:
        """Empty input and input without statements both fail."""
        with pytest.raises(ExtractionFailure):
            await rule_extractor.extract(text, "cap-1")


# ============================================================================
# LLM Extractor
# ============================================================================


VALID_OUTPUT = {
    "atoms": [
        {"statement": "We decided to use PostgreSQL.", "kind": "decision", "confidence": 92},
        {"statement": "Scaling above 10k TPS is unproven.", "kind": "risk", "confidence": 80},
    ],
    "relations": [{"from_index": 1, "to_index": 0, "type": "related", "confidence": 70}],
}


def fenced(payload: dict) -> str:
    return f"Here you go:\n```json\n{json.dumps(payload)}\n```"


class TestLLMExtractor:
    """Tests for LLM output validation."""

    @pytest.mark.asyncio
    async def test_valid_output(self) -> None:
        llm = FakeLLM(fenced(VALID_OUTPUT))

        output = await LLMExtractor(llm).extract(SCENARIO_TEXT, "cap-1")

        assert len(output.atoms) == 2
        assert output.atoms[0].kind is AtomKind.DECISION
        assert output.relations[0].confidence == 70
        assert SCENARIO_TEXT in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_fractional_confidence(self) -> None:
        """Confidence given as a 0-1 fraction is scaled to a percentage."""
        payload = {"atoms": [{"statement": "PostgreSQL is the primary store.", "kind": "fact", "confidence": 0.85}]}

        output = await LLMExtractor(FakeLLM(json.dumps(payload))).extract("text", "cap-1")

        assert output.atoms[0].confidence == 85

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        with pytest.raises(ExtractionFailure, match="invalid JSON"):
            await LLMExtractor(FakeLLM("not json at all")).extract("text", "cap-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "relation",
        [
            {"from_index": 0, "to_index": 5, "type": "related"},
            {"from_index": 1, "to_index": 1, "type": "supports"},
        ],
    )
    async def test_bad_relation_indices(self, relation: dict) -> None:
        """Out-of-range and self-referencing relations fail validation."""
        payload = {**VALID_OUTPUT, "relations": [relation]}

        with pytest.raises(ExtractionFailure, match="validation"):
            await LLMExtractor(FakeLLM(json.dumps(payload))).extract("text", "cap-1")

    @pytest.mark.asyncio
    async def test_unknown_kind(self) -> None:
        payload = {"atoms": [{"statement": "Something.", "kind": "opinion"}]}

        with pytest.raises(ExtractionFailure):
            await LLMExtractor(FakeLLM(json.dumps(payload))).extract("text", "cap-1")

    @pytest.mark.asyncio
    async def test_decision_metadata_on_risk(self) -> None:
        payload = {
            "atoms": [
                {
                    "statement": "Scaling is unproven.",
                    "kind": "risk",
                    "decision_matrix": {"impact": "high", "reversibility": "reversible"},
                }
            ]
        }

        with pytest.raises(ExtractionFailure):
            await LLMExtractor(FakeLLM(json.dumps(payload))).extract("text", "cap-1")

    @pytest.mark.asyncio
    async def test_no_atoms(self) -> None:
        with pytest.raises(ExtractionFailure, match="no atoms"):
            await LLMExtractor(FakeLLM('{"atoms": []}')).extract("text", "cap-1")

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self) -> None:
        """A slow model fails the extraction after a single call."""
        llm = FakeLLM(json.dumps(VALID_OUTPUT), delay=1.0)

        with pytest.raises(ExtractionFailure, match="timed out"):
            await LLMExtractor(llm, timeout=0.05).extract("text", "cap-1")

        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_backend_error(self) -> None:
        """A crashing model client surfaces as an extraction failure."""

        class UnreachableLLM(FakeLLM):
            async def acomplete(self, prompt: str, **kwargs):
                self.prompts.append(prompt)
                raise ConnectionError("connection refused")

        llm = UnreachableLLM("{}")

        with pytest.raises(ExtractionFailure, match="ConnectionError"):
            await LLMExtractor(llm).extract("text", "cap-1")

        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_empty_text_skips_model(self) -> None:
        llm = FakeLLM(json.dumps(VALID_OUTPUT))

        with pytest.raises(ExtractionFailure, match="empty"):
            await LLMExtractor(llm).extract("  ", "cap-1")

        assert llm.prompts == []

    @requires_llm()
    @pytest.mark.asyncio
    async def test_live_extraction(self) -> None:
        """Real model output parses into at least one atom."""
        output = await LLMExtractor(timeout=300).extract(SCENARIO_TEXT, "cap-live")

        assert output.atoms


class TestParseJsonResponse:
    def test_plain(self) -> None:
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_unlabelled_fence(self) -> None:
        assert parse_json_response('```\n{"a": 1}\n```') == {"a": 1}
