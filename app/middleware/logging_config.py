"""
Structured logging configuration.

Approval services pass ``extra={"company_id": ..., "execution_id": ...,
"employee_id": ...}``; the request timing middleware adds the HTTP fields.
Both formatters surface those keys:

- JSON (production): one object per line, context keys at top level
- Readable (development / testing): ``HH:MM:SS LEVEL logger: msg [co=1 exec=7]``

LOG_LEVEL overrides the level (default INFO in production, DEBUG otherwise).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Keys copied from ``extra`` into structured output.
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")
APPROVAL_FIELDS = ("company_id", "execution_id", "employee_id")

_SHORT_NAMES = {"company_id": "co", "execution_id": "exec", "employee_id": "emp"}


def _context(record: logging.LogRecord, keys) -> dict:
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record, REQUEST_FIELDS),
            **_context(record, APPROVAL_FIELDS),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line developer format with the approval context appended."""

    COLORS = {"DEBUG": "\033[36m", "INFO": "\033[32m", "WARNING": "\033[33m",
              "ERROR": "\033[31m", "CRITICAL": "\033[35m"}
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        ctx = " ".join(f"{_SHORT_NAMES[k]}={v}" for k, v in _context(record, APPROVAL_FIELDS).items())
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        if ctx:
            line += f" [{ctx}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter(color=not is_testing))
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app runs once per test session and again for every CLI call
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "JSON" if is_prod else "readable")
