"""
Structured logging configuration.

- Development: human-readable colored format, with the AFT context
  (request number, active role, user, event) appended in brackets
- Production: JSON format (log aggregator compatible)
- Log level: controlled via LOG_LEVEL env variable
- LOG_FORMAT=json|readable overrides the per-environment choice

``AFTContextFilter`` stamps the caller's session (user, active role, session
id) and the HTTP correlation id onto every record emitted inside a request,
so service code only passes what it alone knows (request number, action...).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes copied into JSON output when present (passed via extra=)
_EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "correlation_id",
    "session_id",
    "user_id",
    "active_role",
    "required_role",
    "request_id",
    "request_number",
    "action",
    "kind",
    "step_type",
    "from_status",
    "to_status",
    "expected_status",
    "actual_status",
    "error_code",
    "event_type",
)

# (record attribute, label) shown in the readable bracket, in this order
_READABLE_CONTEXT = (
    ("request_number", None),
    ("request_id", "req"),
    ("active_role", "role"),
    ("user_id", "user"),
    ("action", None),
    ("event_type", "event"),
)


class AFTContextFilter(logging.Filter):
    """Copy session context from ``flask.g`` onto the record (never overwrites)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        aft_session = getattr(g, "aft_session", None)
        context = {
            "correlation_id": getattr(g, "correlation_id", None),
            "session_id": getattr(aft_session, "session_id", None),
            "user_id": getattr(aft_session, "user_id", None),
            "active_role": getattr(aft_session, "active_role", None),
        }
        for key, value in context.items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

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
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    @staticmethod
    def context(record: logging.LogRecord) -> str:
        """``[AFT-20260101-0001 role=dta user=4 event=transition]`` or ``""``."""
        parts = []
        for key, label in _READABLE_CONTEXT:
            val = getattr(record, key, None)
            if val is None or val == "":
                continue
            parts.append(f"{label}={val}" if label else str(val))
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.color else ""
        reset = self.RESET if self.color else ""
        ts = datetime.now().strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""
        msg = record.getMessage()
        base = f"{color}{ts} {record.levelname:<8}{reset} {record.name}: {msg}{self.context(record)}{dur_str}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    Reads LOG_LEVEL from env (default: DEBUG in dev, INFO in prod).
    Development  → ReadableFormatter on stderr
    Production   → JSONFormatter on stderr
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    log_format = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()
    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = ReadableFormatter(color=sys.stderr.isatty())

    root = logging.getLogger()
    # Remove existing handlers to prevent duplicates in tests
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(AFTContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, log_format)
