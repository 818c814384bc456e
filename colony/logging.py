"""
Colony Logging Configuration

Rotating file log for the full trace, stderr for warnings and above.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from colony.config import ColonyConfig


def setup_logging(
    log_file: Path | None = None,
    level: str = "INFO",
    log_to_file: bool = True,
) -> logging.Logger:
    """
    Configure logging for Colony.

    Args:
        log_file: Path to log file. If None, file logging disabled.
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_file: Whether to write logs to file

    Returns:
        Root logger for colony
    """
    logger = logging.getLogger("colony")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.handlers.clear()

    file_formatter = logging.Formatter(
        "%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_formatter = logging.Formatter("%(levelname)s: %(message)s")

    # Worker threads log heavily, so the file gets everything
    if log_to_file and log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    logger.propagate = False

    return logger


def configure_logging(config: ColonyConfig) -> logging.Logger:
    """Apply a config's level and file settings, logging into its data directory."""
    return setup_logging(config.log_file, config.log_level, config.log_to_file)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific component.

    Args:
        name: Dotted component name, e.g. ``"swarm.coordinator"``

    Returns:
        Logger instance
    """
    return logging.getLogger(f"colony.{name}")
