"""Logging setup shared by the API process and Celery workers."""

import json
import logging
import logging.config
from datetime import UTC, datetime
from typing import Any

from files_control.config import settings

_CONFIGURED = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, separators=(",", ":"))


def get_logging_config(level: str | None = None, json_output: bool | None = None) -> dict:
    level = (level or settings.log_level).upper()
    use_json = settings.log_json if json_output is None else json_output
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "simple": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if use_json else "simple",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "files_control": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "WARNING"},
            "botocore": {"level": "WARNING"},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    logging.config.dictConfig(get_logging_config(level, json_output))
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
