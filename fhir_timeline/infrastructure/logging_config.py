"""Logging setup for the importer.

Two output modes share one root handler: readable lines for interactive CLI
use, and one JSON object per line (``FT_LOG_JSON=true``) for log shippers.
Import runs attach their job context through ``JobLogAdapter`` so every JSON
line of a run can be filtered by ``job_id``.

Security Impact:
    - Post and message content is never logged by the pipeline; records
      attached to job errors stay in the job store
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping, Optional, TextIO

# Attributes copied from ``extra={...}`` into JSON log lines
CONTEXT_FIELDS = ("job_id", "user_id", "phase")

# Third-party loggers kept at WARNING regardless of the configured level
QUIET_LOGGERS = ("duckdb",)

TEXT_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'


class StructuredFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            entry.update(extra_fields)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class JobLogAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps an import job's context on each record.

    Example Usage:
        ```python
        log = JobLogAdapter(logger, job_id=job.job_id, user_id=job.user_id)
        log.info("Queued import")  # JSON line carries job_id and user_id
        ```
    """

    def __init__(self, logger: logging.Logger, job_id: str, user_id: Optional[str] = None):
        super().__init__(logger, {"job_id": job_id, "user_id": user_id})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(use_json: bool = False, log_level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Install a single root handler.

    Parameters:
        use_json: Emit JSON lines instead of readable text
        log_level: Level name; unknown names fall back to INFO
        stream: Output stream (stderr when None)
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        StructuredFormatter() if use_json else logging.Formatter(TEXT_FORMAT, datefmt='%H:%M:%S')
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, job_id: Optional[str] = None, user_id: Optional[str] = None) -> Any:
    """Return a module logger, wrapped with job context when ``job_id`` is given."""
    logger = logging.getLogger(name)
    if job_id is None:
        return logger
    return JobLogAdapter(logger, job_id=job_id, user_id=user_id)
