"""
Logging setup for the back-office API.

Production writes one JSON object per line so the log shipper can index the
tenant, request and entity fields.  Development and testing get a coloured
one-line format with the same context appended in brackets.

LOG_LEVEL overrides the level (DEBUG outside production, INFO in production).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Attributes services pass through ``extra=`` that are worth keeping.
CONTEXT_FIELDS = (
    "request_id",
    "tenant_id",
    "user_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "entity_id",
    "unit_code",
    "gtmi_number",
    "ticket_code",
    "asset_code",
    "action",
)

# Shown inline by the readable formatter; the rest only go to JSON.
_INLINE_FIELDS = ("request_id", "tenant_id", "unit_code", "gtmi_number", "ticket_code", "asset_code")


def _context(record: logging.LogRecord, fields) -> dict:
    ctx = {}
    for key in fields:
        val = getattr(record, key, None)
        if val is not None:
            ctx[key] = val
    return ctx


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "munops",
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record, CONTEXT_FIELDS))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{colour}{stamp} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        ctx = _context(record, _INLINE_FIELDS)
        if ctx:
            line += f" {self.DIM}(" + " ".join(f"{k}={v}" for k, v in ctx.items()) + f"){self.RESET}"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for this app."""
    testing = app.config.get("TESTING", False)
    production = not (app.config.get("DEBUG", False) or testing)

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app() runs once per test session and again from the CLI
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, %s output)", level_name,
                        "json" if production else "readable")
