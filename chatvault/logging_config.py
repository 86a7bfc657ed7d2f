"""
Logging configuration for chatvault.

Library code only logs through module-level loggers under ``chatvault``;
applications call one of these helpers to decide where that output goes.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union


def configure_logging(level: int = logging.WARNING) -> logging.Logger:
    """Send chatvault log records at ``level`` and above to stderr."""
    logger = logging.getLogger("chatvault")
    logger.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        logger.addHandler(handler)
    return logger


def configure_ops_log(data_dir: Union[str, Path]) -> RotatingFileHandler:
    """Configure a persistent operations log in the data directory.

    Writes to {data_dir}/chatvault-ops.log (1MB max, 3 backups).
    Returns the handler so it can be removed on close().
    """
    log_path = Path(data_dir) / "chatvault-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(str(log_path), maxBytes=1_000_000, backupCount=3)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    logger = logging.getLogger("chatvault")
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler
