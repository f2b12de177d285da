"""Logging setup shared by the API server and the command line client."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """Configure the ``novelreader`` logger hierarchy and return its root.

    ``level`` defaults to ``NOVELREADER_LOG_LEVEL`` or ``INFO``. Calling
    the function again replaces the handler instead of stacking a
    second one.
    """
    if level is None:
        level = os.environ.get("NOVELREADER_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("novelreader")
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(handler)
    return logger
