"""Central logging configuration."""
from __future__ import annotations

import logging
from logging.config import dictConfig

from newsletter_desk.core.config import settings

ROOT_LOGGER_NAME = "newsletter-desk"

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["console"],
        "level": "DEBUG" if settings.environment == "development" else "INFO",
    },
}


def configure_logging(level: str | None = None) -> None:
    """Apply the logging configuration once at application startup."""

    config = dict(LOGGING_CONFIG)
    if level is not None:
        config["root"] = {**LOGGING_CONFIG["root"], "level": level}
    dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    """Child of the package logger, named after the calling module."""

    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name.rsplit('.', 1)[-1]}")


logger = logging.getLogger(ROOT_LOGGER_NAME)
