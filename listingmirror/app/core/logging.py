"""Logging configuration for the listing monitor."""

from __future__ import annotations

import logging
from logging.config import dictConfig


def configure_logging(level: str = "INFO") -> None:
    """Configure console logging for the service and its workers."""

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "loggers": {
                "httpx": {"level": "WARNING"},
            },
            "root": {
                "handlers": ["console"],
                "level": level,
            },
        }
    )


logger = logging.getLogger("listingmirror")
