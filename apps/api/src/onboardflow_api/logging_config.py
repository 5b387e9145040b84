"""
Logging configuration for the onboarding engine.

- LOG_FORMAT=readable (default): compact single-line output for local runs
- LOG_FORMAT=json: one JSON object per line for log aggregation
- LOG_LEVEL controls verbosity (default INFO)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone


_EXTRA_FIELDS = ("task_id", "client_id", "member_id", "action", "stage")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        base = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(level_name: str | None = None, log_format: str | None = None) -> None:
    level_name = (level_name or os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = (log_format or os.getenv("LOG_FORMAT") or "readable").lower()

    formatter: logging.Formatter = JSONFormatter() if log_format == "json" else ReadableFormatter()

    # Single stream handler on the package logger; uvicorn keeps its own.
    package_logger = logging.getLogger("onboardflow_api")
    package_logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    package_logger.debug("logging configured: level=%s format=%s", level_name, log_format)
