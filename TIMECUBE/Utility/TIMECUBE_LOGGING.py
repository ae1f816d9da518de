"""
TIMECUBE_LOGGING
================

Shared logger factory for TIMECUBE utilities.

Every TIMECUBE operation accepts an optional ``logger`` argument.  When
the caller does not provide one, the operation asks this module for a
named default logger.  Warnings (skipped frames, unreadable sources) and
fatal causes go to stderr, the diagnostic stream; stdout stays free for
reports such as the scanned file list.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(
    name: str,
    *,
    level: int = logging.INFO,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Create (or reuse) a named logger with a single stream handler.

    Repeated calls return the same logger without stacking handlers, so
    interactive sessions that re-run a tool do not print duplicates.

    Parameters
    ----------
    name : str
        Logger name, e.g. "TIMECUBE_APPLYTS".
    level : int
        Logging level applied to the logger.
    stream : TextIO, optional
        Handler stream. Defaults to sys.stderr.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Root handlers would print a second copy.
    logger.propagate = False

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler(stream=stream if stream is not None else sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger


__all__ = ["LOG_FORMAT", "get_logger"]
