"""Structured logging setup.

Logs always go to stderr so ``--output json`` leaves stdout machine-readable.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

# Libraries that log every connection or request at INFO
_NOISY_LOGGERS = ("aiosqlite", "aiobotocore", "botocore", "sqlalchemy.engine", "urllib3")


def configure_logging(level: int | str = logging.WARNING, *, json: bool = True) -> None:
    """Configure structlog on top of the standard library logger."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    renderer: Any = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    logging.getLogger().setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


@contextmanager
def run_context(**fields: Any) -> Iterator[str]:
    """Bind a fresh ``run_id`` plus ``fields`` to every log line inside the block."""

    run_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(run_id=run_id, **fields):
        yield run_id
