"""
Logging setup for the appraisal service.

A single named stderr handler is installed on the root logger. Records carry
request context from the timing middleware and workflow context (actor,
assessment, transition) through ``extra=``; both formatters surface it.

Settings, read from app config and overridable from the environment:
    LOG_LEVEL   DEBUG outside production, INFO in production
    LOG_FORMAT  "json" in production, "text" elsewhere
"""

import json
import logging
import sys
from datetime import datetime, timezone

HANDLER_NAME = "appraisal"
FORMATS = ("json", "text")

# ``extra=`` keys set by the timing middleware
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")

# ``extra=`` keys set by the workflow, rubric and release services
WORKFLOW_FIELDS = (
    "actor_id",
    "assessment_id",
    "action",
    "from_status",
    "to_status",
    "step_index",
    "department_role_id",
    "template_id",
    "released_count",
)

QUIET_LOGGERS = {
    "werkzeug": logging.WARNING,
    "urllib3": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "alembic.runtime.migration": logging.INFO,
}


def record_context(record: logging.LogRecord, fields=REQUEST_FIELDS + WORKFLOW_FIELDS) -> dict:
    """The ``extra=`` fields set on a record, in the order of ``fields``."""
    return {key: getattr(record, key) for key in fields if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with request and workflow context nested."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        request_ctx = record_context(record, REQUEST_FIELDS)
        if request_ctx:
            entry["request"] = request_ctx
        workflow_ctx = record_context(record, WORKFLOW_FIELDS)
        if workflow_ctx:
            entry["workflow"] = workflow_ctx
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Single-line terminal format. Level names are coloured only on a TTY."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = False):
        super().__init__(datefmt="%H:%M:%S")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<8}"
        if self.color and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"
        line = f"{self.formatTime(record, self.datefmt)} {level} {record.name}: {record.getMessage()}"
        context = self.describe(record)
        if context:
            line += f" [{context}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def describe(record: logging.LogRecord) -> str:
        """Compact ``key=value`` suffix; a status change reads ``from->to``."""
        ctx = record_context(record, WORKFLOW_FIELDS)
        parts = []
        if "from_status" in ctx and "to_status" in ctx:
            parts.append(f"{ctx.pop('from_status')}->{ctx.pop('to_status')}")
        parts.extend(f"{key}={value}" for key, value in ctx.items())
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"{duration:.0f}ms")
        return " ".join(parts)


def _resolve_settings(app):
    """Return (level, format, warnings) for the app's environment."""
    is_prod = not app.config.get("DEBUG", False) and not app.config.get("TESTING", False)
    warnings = []

    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        warnings.append(f"Unknown LOG_LEVEL {level_name!r}; using INFO")
        level = logging.INFO

    fmt = (app.config.get("LOG_FORMAT") or ("json" if is_prod else "text")).lower()
    if fmt not in FORMATS:
        warnings.append(f"Unknown LOG_FORMAT {fmt!r}; using text")
        fmt = "text"
    return level, fmt, warnings


def configure_logging(app, stream=None) -> logging.Handler:
    """
    Install the service log handler on the root logger.

    Calling it again (one app per test, say) replaces the handler it
    installed earlier and leaves any other root handlers alone.
    """
    level, fmt, warnings = _resolve_settings(app)
    stream = stream or sys.stderr

    if fmt == "json":
        formatter = JSONFormatter()
    else:
        formatter = TextFormatter(color=hasattr(stream, "isatty") and stream.isatty())

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(existing)
    handler = logging.StreamHandler(stream)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)

    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(floor)
    app.logger.setLevel(level)

    for message in warnings:
        app.logger.warning(message)
    if not app.config.get("TESTING", False):
        app.logger.info("Logging configured: level=%s format=%s", logging.getLevelName(level), fmt)
    return handler
