"""
Logging setup - console plus a daily log file, both driven by the
`[logging]` config section.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from pushcast.core.config import LoggingConfig


def setup_logging(
    settings: LoggingConfig | None = None,
    console_level: int | str | None = None,
) -> logging.Logger:
    """
    Setup Pushcast logging.

    Args:
        settings: The `[logging]` section (dir, console_level, file_level)
        console_level: Overrides settings.console_level (e.g. --verbose)

    Returns:
        The configured logger
    """
    settings = settings or LoggingConfig()
    log_dir = Path(settings.dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("pushcast")
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []

    # Console handler (minimal output)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level or settings.console_level)
    console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console_handler)

    # File handler (full detail, one file per day)
    log_file = log_dir / f"pushcast_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(settings.file_level)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(file_handler)

    logger.info(f"Logging initialized. File: {log_file}")

    return logger
