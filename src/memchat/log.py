"""Logging setup."""

from __future__ import annotations

import logging
import sys

from memchat.config import LogConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: LogConfig | str | None = None) -> None:
    """Configure the root logger with a stdout stream handler."""
    if config is None:
        config = LogConfig()
    level_name = config if isinstance(config, str) else config.level
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
