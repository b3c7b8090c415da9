"""Structured logging for the worker and the admin CLI.

VITALS_LOG_FORMAT selects "json" (default, one object per line) or "text".
Context travels as `extra={"vitals_job_id": ...}`; JSON output lifts every
`vitals_*` attribute to a top-level key so log queries can filter on it.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

EXTRA_PREFIX = "vitals_"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Third-party loggers that are chatty at INFO (httpx logs every request).
_QUIET_LOGGERS = ("httpx", "httpcore")


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k.startswith(EXTRA_PREFIX)}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
        entry.update(_context(record))
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain text with the vitals_* context appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        pairs = " ".join(f"{k[len(EXTRA_PREFIX):]}={v}" for k, v in sorted(context.items()))
        return f"{line} [{pairs}]"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
