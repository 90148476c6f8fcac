"""
Correlation-scoped logging.

Components receive a logger instead of reaching for a process-wide one, so
a request or task can bind its identifiers once and every log line from
the pipeline carries them.

Usage:
    log = bind_logger(logger, task_id=task.id, entity_id="123")
    log.info("sync.fetch_started", extra={"attempt": 1})
"""

import logging
from typing import Any, Optional, Union

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


class ContextLogger(logging.LoggerAdapter):
    """LoggerAdapter that merges bound context into each record's extra."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextLogger":
        merged = dict(self.extra)
        merged.update({k: v for k, v in context.items() if v is not None})
        return ContextLogger(self.logger, merged)


def bind_logger(logger: Optional[LoggerLike] = None, **context: Any) -> ContextLogger:
    """Return a ContextLogger bound to the given context."""
    if logger is None:
        logger = logging.getLogger("catalog_sync")
    if isinstance(logger, ContextLogger):
        return logger.bind(**context)
    if isinstance(logger, logging.LoggerAdapter):
        logger = logger.logger
    return ContextLogger(
        logger, {k: v for k, v in context.items() if v is not None}
    )


def configure_logging(level: str = "INFO") -> None:
    """Process-level logging setup for entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
