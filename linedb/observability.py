"""
Logging setup for processes embedding linedb.

Library modules only create loggers (`logging.getLogger(__name__)`) and
attach structured context through `extra=`. Installing handlers is left to
the host process, which can call setup_logging() with the loaded config.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ObservabilityConfig


class _ExtraJSONFormatter(json_log_formatter.JSONFormatter):
    """JSON formatter that also records logger name and level."""

    def json_record(self, message: str, extra: dict, record: logging.LogRecord) -> dict:
        extra = super().json_record(message, extra, record)
        extra["level"] = record.levelname
        extra["logger"] = record.name
        return extra


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = _ExtraJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
