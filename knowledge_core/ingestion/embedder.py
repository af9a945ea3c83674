"""
Statement Embedders.

Maps an atom statement to a fixed-length vector. ``embed_statements`` wraps
any embedder with a per-call timeout and a bounded retry; an atom that still
cannot be embedded comes back as ``None`` instead of failing the batch.
"""

import asyncio
import hashlib
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_core.knowledge.similarity import content_tokens
from knowledge_core.utils.logger import get_logger

if TYPE_CHECKING:
    from app.config import Settings

logger = get_logger(__name__)


class EmbeddingFailure(Exception):
    """Raised when a single statement cannot be embedded."""

    pass


class Embedder(Protocol):
    """Maps a statement to a fixed-length vector."""

    async def embed(self, statement: str) -> list[float]: ...


class HashingEmbedder:
    """
    Deterministic feature-hashing bag-of-words embedder.

    Every content token is hashed into one of ``dimensions`` buckets with a
    signed weight; the result is L2-normalized. Needs no model download, so
    it is the offline default.
    """

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions

    async def embed(self, statement: str) -> list[float]:
        tokens = content_tokens(statement)
        if not tokens:
            raise EmbeddingFailure(f"No content tokens in statement: {statement!r}")

        vector = np.zeros(self.dimensions, dtype=float)
        for token in tokens:
            digest = int.from_bytes(
                hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "big"
            )
            sign = 1.0 if digest >> 63 == 0 else -1.0
            vector[digest % self.dimensions] += sign

        return (vector / np.linalg.norm(vector)).tolist()


class LlamaIndexEmbedder:
    """Adapter over a llama-index ``BaseEmbedding`` (HuggingFace, OpenAI, ...)."""

    def __init__(self, model: Any = None) -> None:
        self._model = model

    @property
    def model(self) -> Any:
        """Get the embedding model."""
        if self._model is None:
            from knowledge_core.utils.llm_factory import get_embedding_model

            self._model = get_embedding_model()
        return self._model

    async def embed(self, statement: str) -> list[float]:
        try:
            vector = await self.model.aget_text_embedding(statement)
        except Exception as e:
            raise EmbeddingFailure(f"Embedding model failed: {e}") from e
        if not vector:
            raise EmbeddingFailure("Embedding model returned an empty vector")
        return list(vector)


def create_embedder(settings: "Settings") -> Embedder:
    """Build the embedder selected by ``settings.embedding_backend``."""
    from app.config import EmbeddingBackend

    if settings.embedding_backend is EmbeddingBackend.HASHING:
        return HashingEmbedder(settings.hashing_dimensions)

    from knowledge_core.utils.llm_factory import get_embedding_model

    return LlamaIndexEmbedder(get_embedding_model(settings.embedding_backend))


async def embed_one(
    embedder: Embedder,
    statement: str,
    timeout: float = 30.0,
    retries: int = 1,
) -> list[float]:
    """
    Embed one statement with a timeout, retrying on failure.

    Raises:
        EmbeddingFailure: If every attempt failed or timed out
    """

    async def attempt_embed() -> list[float]:
        try:
            return await asyncio.wait_for(embedder.embed(statement), timeout=timeout)
        except TimeoutError as e:
            raise EmbeddingFailure(f"Embedding timed out after {timeout}s") from e
        except EmbeddingFailure:
            raise
        except Exception as e:
            raise EmbeddingFailure(f"Embedding backend error: {type(e).__name__}: {e}") from e

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=0.05, max=1),
        retry=retry_if_exception_type(EmbeddingFailure),
        reraise=True,
    )
    return await retrying(attempt_embed)


async def embed_statements(
    embedder: Embedder,
    statements: Sequence[str],
    timeout: float = 30.0,
    retries: int = 1,
) -> list[list[float] | None]:
    """
    Embed a batch of statements, one slot per input.

    A statement whose embedding is unavailable after ``retries`` retries
    yields ``None``; the rest of the batch is unaffected.
    """

    async def safe_embed(index: int, statement: str) -> list[float] | None:
        try:
            return await embed_one(embedder, statement, timeout=timeout, retries=retries)
        except EmbeddingFailure as e:
            logger.warning(f"Atom {index} left unembedded: {e}")
            return None

    return list(
        await asyncio.gather(*(safe_embed(i, s) for i, s in enumerate(statements)))
    )
