"""
Shared utilities: LLM/embedding backends and Rich logging.
"""

from knowledge_core.utils.llm_factory import (
    LLMFactoryError,
    get_embedding_model,
    get_llm,
)
from knowledge_core.utils.logger import (
    ContextFilter,
    LogContext,
    current_context,
    get_logger,
    setup_logging,
)

__all__ = [
    # LLM Factory
    "get_llm",
    "get_embedding_model",
    "LLMFactoryError",
    # Logging
    "get_logger",
    "setup_logging",
    "LogContext",
    "ContextFilter",
    "current_context",
]
