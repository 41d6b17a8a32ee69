"""
Centralized logging configuration for libartifact.

Modules log through ``logging.getLogger(__name__)``; entry points (the CLI,
the registry server) call ``setup_logging()`` once to attach a rich handler
to the ``libartifact`` logger.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_initialized = False


def _level_from_env() -> str:
    raw = str(os.environ.get("LIBARTIFACT_LOG_LEVEL", "INFO") or "INFO").strip().upper()
    if raw == "WARN":
        return "WARNING"
    if raw in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        return raw
    return "INFO"


def setup_logging(level: Optional[str] = None, *, console: Optional[Console] = None) -> None:
    """
    Initialize logging for libartifact.

    Args:
        level: Minimum log level. Defaults to LIBARTIFACT_LOG_LEVEL or INFO.
        console: Console to log to. Defaults to stderr.
    """
    global _initialized

    logger = logging.getLogger("libartifact")
    logger.setLevel((level or _level_from_env()).upper())

    if _initialized:
        return

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)

    _initialized = True
