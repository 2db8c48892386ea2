"""Logging configuration module."""

from __future__ import annotations

import logging

from pixelme.config.settings import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Per-request chatter from the HTTP stack drowns out pipeline events.
NOISY_LOGGERS = ("httpx", "httpcore", "PIL")


def configure_logging(level: str | None = None) -> None:
    """Configure root logger according to project conventions."""

    name = (level or get_settings().log_level).upper()
    resolved = getattr(logging, name, logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))
