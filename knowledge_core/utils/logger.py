"""
Structured Logging with Rich.

Rich console logging for the pipeline, API and scripts. Fields bound with
LogContext (capsule id, cluster id) are appended to every record emitted
inside the block, per thread and per asyncio task.
"""

import logging
from contextvars import ContextVar, Token
from functools import lru_cache

from rich.console import Console
from rich.logging import RichHandler

ContextFields = dict[str, str | int | float]

_log_context: ContextVar[ContextFields] = ContextVar("log_context", default={})


def current_context() -> ContextFields:
    """Fields bound by the enclosing LogContext blocks."""
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copies the bound fields onto each record and renders them as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _log_context.get()
        for key, value in fields.items():
            setattr(record, key, value)
        record.context = "".join(f" [{key}={value}]" for key, value in fields.items())
        return True


def setup_logging(level: str = "INFO") -> None:
    """
    Configure root logger with Rich handler.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        show_time=True,
        show_path=False,
    )
    handler.addFilter(ContextFilter())

    logging.basicConfig(
        level=level,
        format="%(name)s | %(message)s%(context)s",
        datefmt="[%X]",
        handlers=[handler],
    )

    # Reduce noise from third-party libraries
    for noisy in ("httpx", "httpcore", "llama_index", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@lru_cache(maxsize=128)
def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name (typically ``__name__``)."""
    return logging.getLogger(name)


class LogContext:
    """
    Context manager that binds extra fields to every record logged inside it.

    Blocks nest; inner fields override outer ones until the block exits.

    Usage:
        with LogContext(logger, capsule_id="cap-1"):
            logger.info("Committing batch")
    """

    def __init__(self, logger: logging.Logger, **context: str | int | float) -> None:
        self.logger = logger
        self.context = context
        self._token: Token[ContextFields] | None = None

    def __enter__(self) -> "LogContext":
        self._token = _log_context.set({**_log_context.get(), **self.context})
        return self

    def __exit__(self, *args: object) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
