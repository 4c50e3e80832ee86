"""Loguru sink configuration for scripts and the service facade."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from loguru import logger

from etnopapers.utils.config import LoggingConfig


def setup_logging(config: LoggingConfig | None = None, *, verbose: bool = False) -> None:
    """Configure Loguru sinks from the logging section of the configuration."""
    # Allow developers to opt out while debugging.
    if os.getenv("ETNOPAPERS_DISABLE_LOG_RECONFIG") == "1":
        return

    config = config or LoggingConfig()
    level = "DEBUG" if verbose else config.level.upper()
    serialize = config.format == "json"

    logger.remove()
    logger.add(sys.stderr, level=level, serialize=serialize)

    if config.enable_file:
        target = Path(config.file)
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(target),
            level=level,
            rotation=f"{config.max_size_mb} MB",
            retention=config.backup_count,
            compression="zip",
            serialize=serialize,
        )
