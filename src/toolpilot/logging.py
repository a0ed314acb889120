"""
ToolPilot Structured Logging

Provides a configured logger for the ToolPilot package using stdlib logging
with structured context.

Usage:
    from toolpilot.logging import get_logger

    logger = get_logger("toolpilot.safety")
    logger.info("Call admitted", extra={"tool_name": "read_file", "risk_level": "LOW"})

For production, configure with JSON output:
    from toolpilot.logging import configure_logging
    configure_logging(json_output=True, level="INFO")

On import the level and format are taken from TOOLPILOT_LOG_LEVEL and
TOOLPILOT_LOG_JSON.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

STRUCTURED_KEYS = (
    "decision_id",
    "step_id",
    "tool_name",
    "risk_level",
    "attempt",
    "outcome",
    "duration_ms",
    "rule",
)


class ToolPilotFormatter(logging.Formatter):
    """Structured log formatter for ToolPilot.

    Outputs either human-readable or JSON format depending on configuration.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._json_output:
            return json.dumps(log_data, default=str)

        extra_keys = {
            k: v
            for k, v in log_data.items()
            if k not in ("timestamp", "level", "logger", "message", "exception")
        }
        extra_str = ""
        if extra_keys:
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in extra_keys.items())

        line = f"[{log_data['timestamp']}] {record.levelname:8s} {record.name}: {record.getMessage()}{extra_str}"
        if "exception" in log_data:
            line = f"{line}\n{log_data['exception']}"
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """Configure ToolPilot logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: If True, output JSON format (for log shippers).
    """
    root_logger = logging.getLogger("toolpilot")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ToolPilotFormatter(json_output=json_output))
    root_logger.addHandler(handler)

    root_logger.propagate = False


def get_logger(name: str = "toolpilot") -> logging.Logger:
    """Get a ToolPilot logger instance.

    Args:
        name: Logger name (usually the module path, e.g. "toolpilot.safety").
    """
    return logging.getLogger(name)


configure_logging(
    level=os.environ.get("TOOLPILOT_LOG_LEVEL", "WARNING"),
    json_output=os.environ.get("TOOLPILOT_LOG_JSON", "").lower() in ("1", "true", "yes"),
)
