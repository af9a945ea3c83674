"""
Ingestion Layer - Text to Staged Knowledge.

Extraction, embedding, clustering and conflict correlation, orchestrated by
the ingestion pipeline.
"""

from knowledge_core.ingestion.clusterer import SimilarityClusterer
from knowledge_core.ingestion.correlator import (
    ConflictCorrelator,
    ConflictJudge,
    HeuristicConflictJudge,
    Judgement,
    JudgeError,
    LLMConflictJudge,
    Verdict,
)
from knowledge_core.ingestion.embedder import (
    Embedder,
    EmbeddingFailure,
    HashingEmbedder,
    LlamaIndexEmbedder,
    create_embedder,
    embed_statements,
)
from knowledge_core.ingestion.extractor import (
    ExtractionFailure,
    Extractor,
    LLMExtractor,
    RuleBasedExtractor,
)
from knowledge_core.ingestion.pipeline import IngestionPipeline, normalize_statement
from knowledge_core.ingestion.progress import IngestionNotFound, IngestionTracker
from knowledge_core.ingestion.schemas import (
    CandidateAtom,
    CandidateRelation,
    ExtractionOutput,
    IngestionResult,
    IngestionStatus,
    PipelineStage,
    ProgressEvent,
    ProgressSignal,
    StageState,
)

__all__ = [
    # Pipeline
    "IngestionPipeline",
    "IngestionTracker",
    "IngestionNotFound",
    "normalize_statement",
    # Extraction
    "Extractor",
    "LLMExtractor",
    "RuleBasedExtractor",
    "ExtractionFailure",
    # Embedding
    "Embedder",
    "HashingEmbedder",
    "LlamaIndexEmbedder",
    "EmbeddingFailure",
    "create_embedder",
    "embed_statements",
    # Clustering
    "SimilarityClusterer",
    # Correlation
    "ConflictCorrelator",
    "ConflictJudge",
    "HeuristicConflictJudge",
    "LLMConflictJudge",
    "Judgement",
    "JudgeError",
    "Verdict",
    # Schemas
    "CandidateAtom",
    "CandidateRelation",
    "ExtractionOutput",
    "IngestionResult",
    "IngestionStatus",
    "PipelineStage",
    "ProgressEvent",
    "ProgressSignal",
    "StageState",
]
