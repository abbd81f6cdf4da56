"""
diagnostics.py

Logging helpers for formlogic.

Library modules log through child loggers of ``formlogic`` and never install
handlers themselves. Applications call ``configure_logging()`` once; setting
FORMLOGIC_DEBUG=1 switches the package to DEBUG output.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional, Set

LOGGER_NAME = "formlogic"

# Enable with: FORMLOGIC_DEBUG=1
_DEBUG_ENABLED = os.getenv("FORMLOGIC_DEBUG", "0") == "1"

logging.getLogger(LOGGER_NAME).addHandler(logging.NullHandler())


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the package logger or one of its children (``formlogic.<name>``)."""
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def configure_logging(level: Optional[int] = None, fmt: str = "[%(name)s] %(levelname)s %(message)s") -> logging.Logger:
    """
    Attach a stream handler to the package logger.

    Level resolution: explicit argument, then FORMLOGIC_DEBUG, then WARNING.
    Calling this twice does not duplicate handlers.
    """
    logger = get_logger()
    if level is None:
        level = logging.DEBUG if _DEBUG_ENABLED else logging.WARNING
    logger.setLevel(level)

    for handler in logger.handlers:
        if getattr(handler, "_formlogic_handler", False):
            handler.setLevel(level)
            return logger

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt))
    handler.setLevel(level)
    handler._formlogic_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger


class WarningTracker:
    """
    Emits a diagnostic at most once per site.

    A site is any stable string (usually the serialized condition or the
    response expression). One tracker lives in each form's cache scope, so
    two form instances each get their own first warning.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._seen: Set[str] = set()
        self._lock = threading.Lock()
        self._logger = logger or get_logger()

    def warn_once(self, site: str, message: str, *args) -> bool:
        """Log ``message`` if ``site`` has not warned yet. Returns True if it logged."""
        with self._lock:
            if site in self._seen:
                return False
            self._seen.add(site)
        self._logger.warning(message, *args)
        return True

    def has_warned(self, site: str) -> bool:
        with self._lock:
            return site in self._seen

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()
