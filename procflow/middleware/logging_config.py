"""
Logging setup for the workflow service.

Service modules log through ``logging.getLogger(__name__)`` and pass
``process_instance_id``, ``step_instance_id`` and ``event_type`` via
``extra=``.  ``RequestContextFilter`` stamps every record emitted while a
request is being served with that request's id and caller, so workflow
log lines can be joined with the access line written by ``timing``.

Production (non-debug, non-testing) writes one JSON object per line;
everything else writes a single readable line.  LOG_LEVEL overrides the
level.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

REQUEST_KEYS = ("request_id", "user_id", "method", "path", "status", "duration_ms")
WORKFLOW_KEYS = ("process_instance_id", "step_instance_id", "event_type")


class RequestContextFilter(logging.Filter):
    """Attach ``request_id`` and ``user_id`` when a Flask request is active."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "user_id", None) is None:
                record.user_id = request.headers.get("X-User-Id")
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; unset context keys are omitted."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in REQUEST_KEYS + WORKFLOW_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [pi=.. step=.. req=..]``"""

    _TAGS = (("process_instance_id", "pi"), ("step_instance_id", "step"), ("request_id", "req"))

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        tags = [
            f"{label}={getattr(record, key)}"
            for key, label in self._TAGS
            if getattr(record, key, None) is not None
        ]
        if tags:
            # traceback, if any, stays on the lines below the tags
            head, sep, tail = line.partition("\n")
            line = f"{head} [{' '.join(tags)}]{sep}{tail}"
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    as_json = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if as_json else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())
    handler.addFilter(RequestContextFilter())

    # test suites build several apps; replace rather than stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    app.logger.setLevel(level)
