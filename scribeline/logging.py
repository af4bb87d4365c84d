"""
scribeline.logging - Centralized logging configuration.

Modules log through ``logging.getLogger(__name__)``, which places them under
the ``scribeline`` logger configured here. HTTP client loggers are held at
WARNING so ``--verbose`` shows job supervision rather than connection chatter.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("scribeline")

QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for a CLI run.

    Args:
        verbose: If True, scribeline logs at DEBUG; otherwise WARNING
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )
    logger.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
