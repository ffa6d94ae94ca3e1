"""
Logging setup: JSON lines on stdout (or plain text), optional log file.
"""

import json
import logging
import sys
import traceback
from datetime import datetime
from typing import Optional

from config import Settings

# Attributes every LogRecord carries; anything else came in through ``extra=``
_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "message", "taskName",
}


class StructuredJSONFormatter(logging.Formatter):
    """Formats records as one JSON object per line, merging ``extra`` fields."""

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "environment": self.environment,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": "".join(traceback.format_exception(*record.exc_info)),
            }

        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _STANDARD_ATTRS:
                continue
            log_data[key] = value

        return json.dumps(log_data, ensure_ascii=False, default=str)


_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(settings: Settings, stream=None) -> logging.Logger:
    """
    Configure the root logger once per process.

    Handlers installed by a previous call are replaced, so calling this again
    (tests, app reloads) does not duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_summarizer_handler", False):
            root.removeHandler(handler)

    if settings.log_format == "json":
        formatter: logging.Formatter = StructuredJSONFormatter(settings.environment)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler._summarizer_handler = True
    root.addHandler(console_handler)

    log_file: Optional[str] = settings.log_file
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._summarizer_handler = True
        root.addHandler(file_handler)

    # SQL echo is controlled by DATABASE_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root
