from __future__ import annotations

import logging.config
from typing import Any, Dict, Optional

from funnel_backend.config import settings


def build_logging_config(level: Optional[str] = None) -> Dict[str, Any]:
    """Return a dictConfig mapping for app + uvicorn loggers."""
    level = (level or settings.log_level).upper()

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "funnel": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn.access": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Install the logging config. Safe to call more than once."""
    logging.config.dictConfig(build_logging_config(level))
    logging.getLogger("funnel.logging").debug("Logging configured")
