"""Structured logging setup for wa-hub.

All modules emit through structlog; stdlib logging only supplies the output
handler (stdout, or a size-rotated file). Background work spawned for an
instance binds the instance id into structlog's context variables, so every
line logged from inside that task carries ``instance_id`` without threading
it through each call.

Example:
    setup_logging(LoggingConfig(level="INFO", format="json"))
    bind_instance_context("tenant-42", task="send_worker")
    get_logger(__name__).info("send_dequeued", queue_size=3)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from typing import Any

import structlog

from wahub.config import LoggingConfig

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def bind_instance_context(instance_id: str, task: str | None = None) -> None:
    """Bind the instance (and optionally the task name) to the current context.

    The binding lives in a context variable, so calling this at the top of
    an asyncio task scopes it to that task.
    """
    fields: dict[str, Any] = {"instance_id": instance_id}
    if task is not None:
        fields["task"] = task
    structlog.contextvars.bind_contextvars(**fields)


def _output_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        return logging.StreamHandler(sys.stdout)
    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def setup_logging(config: LoggingConfig) -> None:
    """Configure the root handler and the structlog processor chain.

    Args:
        config: Logging section of WaHubConfig
    """
    level = logging.getLevelName(config.level)

    handler = _output_handler(config)
    handler.setLevel(level)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named ``name``."""
    return structlog.get_logger(name)
