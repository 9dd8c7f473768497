"""Logging helpers for the postcard fulfillment service."""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "PostcardFulfillment") -> logging.Logger:
    """Return the named :class:`logging.Logger`.

    Handlers are installed once by :func:`configure_logging` from the entry
    points (``main.py`` and the CLI), never by library modules.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger from ``level`` or ``PF_LOG_LEVEL`` (default INFO)."""
    level_name = (level or os.getenv("PF_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
