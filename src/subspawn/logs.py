"""Logging setup for applications embedding subspawn.

subspawn itself only emits records through ``logging.getLogger(__name__)``;
nothing is configured on import. ``configure_logging()`` attaches a handler to
the ``subspawn`` namespace only, leaving the root logger alone.
"""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config

__all__ = ["configure_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Config | None = None) -> logging.Logger:
    """Configure the ``subspawn`` logger.

    With ``log_debug`` enabled, DEBUG records go to ``config.log_file``;
    otherwise INFO records go to stderr.

    Args:
        config: Configuration to use (default: global configuration)

    Returns:
        The configured ``subspawn`` logger
    """
    config = config or get_config()
    logger = logging.getLogger("subspawn")

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        log_level = logging.INFO

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(log_level)
    return logger
