"""Simple logging utility.

Provides a lightweight wrapper around Python's standard logging
module to produce consistent log messages across the pipeline.  The
default level can be overridden with the ``LIDARGROUND_LOG_LEVEL``
environment variable.
"""

import logging
import os

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger with a preset format."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(os.environ.get("LIDARGROUND_LOG_LEVEL", "INFO").upper())
    return logger


def set_level(level: str) -> None:
    """Change the level of every lidarground logger created so far."""
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("lidarground"):
            logging.getLogger(name).setLevel(level.upper())
