"""
Application Configuration.

Environment-driven settings for the ingestion pipeline, store and API.
Extraction, embedding and conflict judgement backends are swappable:
deterministic local strategies by default, llama-index backed LLMs on demand.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMBackend(str, Enum):
    """Supported LLM backends."""

    OPENAI = "openai"
    OLLAMA = "ollama"


class EmbeddingBackend(str, Enum):
    """Supported embedding backends."""

    HASHING = "hashing"
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"


class ExtractorBackend(str, Enum):
    """Supported atom extractors."""

    RULES = "rules"
    LLM = "llm"


class ConflictJudgeBackend(str, Enum):
    """Supported conflict judges."""

    HEURISTIC = "heuristic"
    LLM = "llm"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === LLM Backend Selection ===
    llm_backend: LLMBackend = Field(
        default=LLMBackend.OLLAMA,
        description="Completion model backend for the LLM extractor and judge",
    )

    # === OpenAI Configuration ===
    openai_api_key: str = Field(
        default="",
        description="OpenAI API key (required if an OpenAI backend is selected)",
    )
    openai_model: str = Field(
        default="gpt-4o",
        description="OpenAI completion model",
    )

    # === Ollama Configuration ===
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server URL",
    )
    ollama_model: str = Field(
        default="llama3",
        description="Ollama completion model",
    )
    ollama_request_timeout: float = Field(
        default=120.0,
        description="Seconds before an Ollama request is abandoned",
    )

    # === Pipeline Strategies ===
    extractor_backend: ExtractorBackend = Field(
        default=ExtractorBackend.RULES,
        description="Atom extractor: 'rules' (offline) or 'llm'",
    )
    conflict_judge: ConflictJudgeBackend = Field(
        default=ConflictJudgeBackend.HEURISTIC,
        description="Conflict judge: 'heuristic' or 'llm'",
    )

    # === Embedding Configuration ===
    embedding_backend: EmbeddingBackend = Field(
        default=EmbeddingBackend.HASHING,
        description="Embedding backend: 'hashing', 'huggingface' or 'openai'",
    )
    embedding_model: str = Field(
        default="BAAI/bge-large-en-v1.5",
        description="Embedding model to use for llama-index backends",
    )
    hashing_dimensions: int = Field(
        default=256,
        ge=8,
        description="Vector length of the hashing embedder",
    )

    # === Clustering & Correlation ===
    cluster_similarity_threshold: float = Field(
        default=0.75,
        ge=-1.0,
        le=1.0,
        description="Cosine similarity needed to join an existing cluster",
    )
    duplicate_threshold: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Token Jaccard similarity that marks a near-duplicate",
    )
    duplicate_cosine_threshold: float = Field(
        default=0.97,
        ge=0.0,
        le=1.0,
        description="Embedding cosine similarity that marks a near-duplicate",
    )
    conflict_subject_threshold: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Content-token overlap for two statements to share a subject",
    )
    conflict_candidate_limit: int = Field(
        default=10,
        ge=1,
        description="Canonical atoms compared against each new atom",
    )

    # === Timeouts & Retries ===
    extraction_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Per-call extractor timeout (no retry)",
    )
    embedding_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-call embedder timeout",
    )
    embedding_retries: int = Field(
        default=1,
        ge=0,
        description="Retries per atom before it falls back to the unclustered bucket",
    )
    commit_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts at committing a batch on write conflicts",
    )
    commit_lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long a commit waits for its capsule lock",
    )

    # === Storage ===
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root data directory",
    )
    knowledge_store_path: Path | None = Field(
        default=None,
        description="JSON file backing the knowledge store (in-memory if unset)",
    )

    # === Query ===
    default_page_limit: int = Field(default=20, ge=1)
    max_page_limit: int = Field(default=100, ge=1)

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level for the API and scripts",
    )

    # === API Configuration ===
    api_host: str = Field(
        default="0.0.0.0",
        description="Interface uvicorn binds to",
    )
    api_port: int = Field(
        default=8000,
        description="Port uvicorn listens on",
    )

    def ensure_directories(self) -> None:
        """Create the parent directory of the store file."""
        if self.knowledge_store_path is not None:
            self.knowledge_store_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    settings = Settings()
    settings.ensure_directories()
    return settings
