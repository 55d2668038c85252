"""structlog configuration for snapsync.

Modules log through ``structlog.get_logger(__name__)``. Applications that
embed snapsync call ``configure_logging()`` once at startup; until then
structlog's defaults apply (pretty console output to stderr).

Environment variables:
    SNAPSYNC_DEBUG: When truthy, lower the log level to DEBUG.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog

ENV_DEBUG = "SNAPSYNC_DEBUG"

LOG_FILE_NAME = "snapsync.log"


def _debug_enabled() -> bool:
    val = os.environ.get(ENV_DEBUG, "").lower()
    return val in ("true", "1", "yes", "on")


def configure_logging(
    level: int | None = None,
    data_dir: Path | None = None,
    json_logs: bool = False,
) -> None:
    """Configure structlog for the current process.

    Args:
        level: stdlib logging level; defaults to INFO, or DEBUG when
            SNAPSYNC_DEBUG is set.
        data_dir: When given, log lines are appended to
            ``<data_dir>/snapsync.log`` instead of stderr.
        json_logs: Render one JSON object per line instead of console text.
    """
    if level is None:
        level = logging.DEBUG if _debug_enabled() else logging.INFO

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=data_dir is None)
        )

    if data_dir is not None:
        data_dir.mkdir(parents=True, exist_ok=True)
        log_file = open(data_dir / LOG_FILE_NAME, "a", encoding="utf-8")
        logger_factory: Any = structlog.WriteLoggerFactory(file=log_file)
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )
