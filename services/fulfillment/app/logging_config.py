"""Logging configuration for the Fulfillment service."""
import logging.config
import sys

from .config import LOG_LEVEL


def setup_logging() -> None:
    """Configure console logging for the service and its libraries."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {
                "format": log_format,
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG",
                "formatter": "simple",
                "stream": sys.stdout
            }
        },
        "loggers": {
            "": {
                "level": LOG_LEVEL.upper(),
                "handlers": ["console"]
            },
            # Keep SQL echo and access logs quiet unless asked for
            "sqlalchemy.engine": {
                "level": "WARNING",
                "propagate": True
            },
            "httpx": {
                "level": "WARNING",
                "propagate": True
            }
        }
    })
