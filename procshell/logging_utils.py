from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from .config import ENV_LOG_LEVEL

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_LEVELS: Dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure logging for programs built on procshell.

    `level` defaults to PROCSHELL_LOG_LEVEL, then WARNING.
    """
    if level is None:
        level = os.environ.get(ENV_LOG_LEVEL) or "WARNING"
    logging.basicConfig(
        level=_normalize_level(level),
        format=fmt or DEFAULT_LOG_FORMAT,
    )


def _normalize_level(level: str) -> int:
    return _LEVELS.get(level.strip().upper(), logging.WARNING)
