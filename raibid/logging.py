"""Logging configuration for the raibid package."""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config

# Libraries that are chatty at DEBUG/INFO
NOISY_LOGGERS = ('urllib3', 'kubernetes', 'requests')


def setup_logging(
    debug: bool = False,
    log_file: Optional[str] = None,
    level: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the root logger for a CLI or API process.

    Args:
        debug: Log everything at DEBUG, including library loggers
        log_file: Also log to this file, rotated at ``max_size_mb``
        level: Level name used when not in debug mode (default: ``RAIBID_LOG_LEVEL``)
        max_size_mb: Size at which the log file is rotated
        backup_count: Number of rotated log files kept

    Returns:
        The ``raibid`` logger
    """
    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)

    handlers = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
        ))

    logging.basicConfig(level=log_level, format=Config.LOG_FORMAT, handlers=handlers, force=True)

    # Disable debug logging for noisy libraries
    if not debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger('raibid')
    if log_file:
        logger.debug(f"Logging to file: {log_file}")
    return logger
