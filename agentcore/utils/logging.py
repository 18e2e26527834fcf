"""Logging configuration."""

import logging
import os
import sys

from pydantic import BaseModel


class LogConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"


def _default_level() -> str:
    return os.getenv("AGENTCORE_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")


def setup_logging(config: LogConfig | None = None) -> None:
    """Set up root logging for applications embedding the core."""
    if config is None:
        config = LogConfig(level=_default_level())

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    # tiktoken pulls encodings over HTTP on first use
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)
        level: Explicit level; defaults to AGENTCORE_LOG_LEVEL, then LOG_LEVEL

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    log_level = level if level else _default_level()
    logger.setLevel(log_level.upper())

    return logger
