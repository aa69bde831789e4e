"""Console logging for settleline.

Library modules log through ``logging.getLogger(__name__)``, so everything
lands under the ``settleline`` logger configured here.  Repositioned tasks are
reported at INFO and graph traversal details at DEBUG.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

LOGGER_NAME = "settleline"

# -v count -> level; anything past the end of the list is DEBUG
_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def setup_logger(verbosity: int, stream: TextIO | None = None) -> None:
    """Attach a plain message handler to the settleline logger.

    Args:
        verbosity: 0 shows warnings only, 1 adds every task that moved,
            2 or more adds traversal details
        stream: Output stream (defaults to sys.stderr)
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(_LEVELS[min(max(verbosity, 0), len(_LEVELS) - 1)])

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False


def reset_logger() -> None:
    """Drop the handler added by setup_logger()."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
