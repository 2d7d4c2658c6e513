"""Logging setup for the application process."""

import logging.config

from src.core.config import settings


def configure_logging(level: str | None = None) -> None:
    """Install one stream handler on the root logger."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": "ext://sys.stderr",
                },
            },
            "root": {
                "level": (level or settings.log_level).upper(),
                "handlers": ["console"],
            },
            "loggers": {
                # SQL echo is controlled by the engine, keep the logger quiet otherwise
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
