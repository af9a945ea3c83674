"""
Similarity helpers shared by clustering and conflict correlation.
"""

import re
from collections.abc import Sequence

import numpy as np

TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:[.'][a-z0-9]+)*")
NUMBER_PATTERN = re.compile(r"\d+(?:[.,]\d+)?(?:k\b|%)?", re.IGNORECASE)

STOPWORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "of", "to", "in", "on", "for", "with",
        "as", "at", "by", "from", "is", "are", "be", "been", "was", "were",
        "it", "its", "this", "that", "these", "those", "we", "our", "us",
        "will", "shall", "should", "must", "can", "could", "would", "may",
        "has", "have", "had", "do", "does", "did", "use", "using", "used",
        "all", "any", "some", "than", "then", "there", "which", "who",
    }
)

NEGATIONS = frozenset(
    {
        "not", "no", "never", "cannot", "can't", "won't", "don't", "doesn't",
        "isn't", "aren't", "shouldn't", "mustn't", "without", "avoid", "none",
    }
)


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens."""
    return TOKEN_PATTERN.findall(text.lower())


def content_tokens(text: str) -> set[str]:
    """Tokens that carry subject matter (no stopwords, no negations)."""
    return {t for t in tokenize(text) if t not in STOPWORDS and t not in NEGATIONS}


def jaccard(tokens_a: set[str], tokens_b: set[str]) -> float:
    """Jaccard similarity of two token sets."""
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def is_negated(text: str) -> bool:
    """Whether a statement carries a negation cue."""
    tokens = set(tokenize(text))
    return bool(tokens & NEGATIONS) or any(t.endswith("n't") for t in tokens)


def numbers_in(text: str) -> set[str]:
    """Normalized numeric values mentioned in a statement ("10K" -> "10k", "100ms" -> "100")."""
    return {m.replace(",", "").lower() for m in NUMBER_PATTERN.findall(text)}


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 when either vector has no length."""
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
