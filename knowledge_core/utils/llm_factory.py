"""
Model Backends for Extraction, Judging and Embedding.

The LLM extractor and LLM conflict judge share one completion model; the
llama-index embedder wraps one embedding model. Each backend lives in an
optional extra, so its package is imported only when that backend is picked
and a missing package or key surfaces as LLMFactoryError.
"""

from collections.abc import Callable
from functools import lru_cache
from importlib import import_module
from typing import TYPE_CHECKING, Any

from llama_index.core.embeddings import BaseEmbedding
from llama_index.core.llms import LLM

from app.config import EmbeddingBackend, LLMBackend, get_settings
from knowledge_core.utils.logger import get_logger

if TYPE_CHECKING:
    from app.config import Settings

logger = get_logger(__name__)


class LLMFactoryError(Exception):
    """Raised when a model backend is misconfigured or not installed."""

    pass


def _load(module: str, attr: str, extra: str) -> Any:
    """Import a backend class from an optional llama-index integration."""
    try:
        return getattr(import_module(module), attr)
    except ImportError as e:
        raise LLMFactoryError(
            f"{attr} backend not installed. Run: pip install 'knowledge-governance[{extra}]'"
        ) from e


def _require_openai_key(settings: "Settings", role: str) -> str:
    if not settings.openai_api_key:
        raise LLMFactoryError(f"OPENAI_API_KEY not set. Required for the OpenAI {role}")
    return settings.openai_api_key


def _openai_llm(settings: "Settings") -> LLM:
    openai_cls = _load("llama_index.llms.openai", "OpenAI", "openai")
    api_key = _require_openai_key(settings, "completion model")
    logger.info(f"Using OpenAI model {settings.openai_model} for extraction and judging")
    return openai_cls(model=settings.openai_model, api_key=api_key)


def _ollama_llm(settings: "Settings") -> LLM:
    ollama_cls = _load("llama_index.llms.ollama", "Ollama", "ollama")
    logger.info(
        f"Using Ollama model {settings.ollama_model} at {settings.ollama_base_url} "
        "for extraction and judging"
    )
    return ollama_cls(
        model=settings.ollama_model,
        base_url=settings.ollama_base_url,
        request_timeout=settings.ollama_request_timeout,
    )


def _huggingface_embedding(settings: "Settings") -> BaseEmbedding:
    model_cls = _load("llama_index.embeddings.huggingface", "HuggingFaceEmbedding", "huggingface")
    logger.info(f"Embedding atoms locally with {settings.embedding_model}")
    return model_cls(model_name=settings.embedding_model)


def _openai_embedding(settings: "Settings") -> BaseEmbedding:
    model_cls = _load("llama_index.embeddings.openai", "OpenAIEmbedding", "openai")
    api_key = _require_openai_key(settings, "embedding model")
    logger.info(f"Embedding atoms with OpenAI {settings.embedding_model}")
    return model_cls(model_name=settings.embedding_model, api_key=api_key)


LLM_BUILDERS: dict[LLMBackend, Callable[["Settings"], LLM]] = {
    LLMBackend.OPENAI: _openai_llm,
    LLMBackend.OLLAMA: _ollama_llm,
}

EMBEDDING_BUILDERS: dict[EmbeddingBackend, Callable[["Settings"], BaseEmbedding]] = {
    EmbeddingBackend.HUGGINGFACE: _huggingface_embedding,
    EmbeddingBackend.OPENAI: _openai_embedding,
}


@lru_cache
def get_llm(backend: LLMBackend | None = None) -> LLM:
    """
    Completion model used by the LLM extractor and the LLM conflict judge.

    Args:
        backend: Override for ``settings.llm_backend``

    Raises:
        LLMFactoryError: Unknown backend, missing extra, or missing key
    """
    settings = get_settings()
    selected = backend or settings.llm_backend
    builder = LLM_BUILDERS.get(selected)
    if builder is None:
        raise LLMFactoryError(f"Unsupported LLM backend: {selected}")
    return builder(settings)


@lru_cache
def get_embedding_model(backend: EmbeddingBackend | None = None) -> BaseEmbedding:
    """
    llama-index embedding model for ``LlamaIndexEmbedder``.

    The hashing backend needs no model; ``create_embedder`` in
    ``knowledge_core.ingestion.embedder`` builds it directly.
    """
    settings = get_settings()
    selected = backend or settings.embedding_backend
    builder = EMBEDDING_BUILDERS.get(selected)
    if builder is None:
        raise LLMFactoryError(
            f"Embedding backend '{getattr(selected, 'value', selected)}' "
            "is not backed by a llama-index model"
        )
    return builder(settings)
