"""Structured logging setup.

Every module logs through ``logging.getLogger(__name__)`` and passes
structured fields via ``extra``. JsonFormatter puts those fields on the
top level of one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from .config import EngineConfig

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Sets, datetimes and records in extra fields fall back to str()
        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_output: bool = True,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Install a stdout handler on the root logger.

    Args:
        level: Root log level name.
        json_output: Emit JSON lines instead of plain text.
        stream: Output stream, stdout when omitted.

    Returns:
        The installed handler.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return handler


def configure_logging(config: EngineConfig, stream: TextIO | None = None) -> logging.Handler:
    """Install logging as described by ``LOG_LEVEL`` and ``LOG_JSON``."""
    return setup_logging(config.log_level, json_output=config.log_json, stream=stream)
