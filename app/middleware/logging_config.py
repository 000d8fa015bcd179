"""
Structured logging configuration.

Two output formats, picked by ``LOG_FORMAT`` (``json`` | ``readable``):
JSON lines for log aggregation, coloured one-liners for a terminal.
Unset, production gets JSON and everything else gets readable output.

Services attach workflow context through ``extra=``; the fields listed in
``CONTEXT_FIELDS`` are copied onto every record that carries them, e.g.

    logger.info("Transition applied", extra={"entity_type": "rfq_item",
                                             "entity_id": 12, "event_type": "transition"})
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# request timing fields first, then workflow fields
CONTEXT_FIELDS = (
    "method", "path", "status", "duration_ms", "remote_addr", "request_id",
    "run_id", "phase", "entity_type", "entity_id", "from_state", "to_state", "event_type",
)

QUIET_LOGGERS = ("urllib3", "requests", "werkzeug", "sqlalchemy.engine")


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output; workflow context is appended as key=value."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        ctx = _context(record)
        duration = ctx.pop("duration_ms", None)
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{self.COLORS.get(record.levelname, '')}{stamp} {record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}"
        )
        if ctx:
            line += " (" + " ".join(f"{k}={v}" for k, v in ctx.items()) + ")"
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    ``LOG_LEVEL`` (env or config) defaults to INFO in production and
    DEBUG elsewhere.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("INFO" if production else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = (app.config.get("LOG_FORMAT") or ("json" if production else "readable")).lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()  # create_app runs once per test session; no stacking
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
