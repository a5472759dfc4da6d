"""
Logging setup for ChronoGenomics.

Modules log through ``get_logger(__name__)``. Applications call
``configure_logging`` once; the default handler renders through rich,
``json_logs=True`` switches to one JSON object per line for pipelines.
"""

import json
import logging
import logging.config
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure the ``chronogenomics`` logger tree."""
    if json_logs:
        handler: Dict[str, Any] = {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "level": level,
        }
    else:
        handler = {
            "()": RichHandler,
            "console": console,
            "show_path": False,
            "rich_tracebacks": True,
            "level": level,
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonFormatter}},
            "handlers": {"default": handler},
            "loggers": {
                "chronogenomics": {
                    "handlers": ["default"],
                    "level": level,
                },
            },
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter"]
