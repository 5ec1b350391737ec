"""Log formatting and setup for the kline ingest service.

Every record is rendered as ``[time] [tag] [channel] : message`` where the
channel is the logger name and the tag is a three letter level code. Modules
attach backfill context (pair, page or range bounds, row counts) through
``extra=``; both formatters render those fields, the JSON one as keys.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from ..config.settings import LoggingConfig

# Keys modules may pass through ``extra=``, in render order
CONTEXT_FIELDS = ("service", "pair", "page_start", "range_start", "range_end", "rows")

LEVEL_TAGS = {
    logging.DEBUG: "FIN",
    logging.INFO: "NFO",
    logging.WARNING: "WRN",
    logging.ERROR: "ERR",
    logging.CRITICAL: "ERR",
}

_QUIET_LOGGERS = ("aiohttp", "asyncpg")


def level_tag(levelno: int) -> str:
    return LEVEL_TAGS.get(levelno, "NFO")


def record_time(record: logging.LogRecord) -> str:
    """UTC creation time of the record with millisecond precision."""
    created = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return created.strftime("%Y-%m-%d_%H-%M-%S_") + f"{int(record.msecs):03d}"


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; backfill context becomes top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": record_time(record),
            "level": record.levelname,
            "tag": level_tag(record.levelno),
            "channel": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain line format with trailing ``key=value`` context."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{record_time(record)}] [{level_tag(record.levelno)}] [{record.name}] : {record.getMessage()}"

        # service is stamped on every record, so it only adds noise here
        context = {k: v for k, v in record_context(record).items() if k != "service"}
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


class ServiceContextFilter(logging.Filter):
    """Stamp every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record):
        record.service = self.service_name
        return True


def build_handler(output: str) -> logging.Handler:
    """
    Handler for a configured destination.

    ``stdout`` and ``stderr`` select a stream, ``file`` opens a new
    ``log_<utc time>.txt`` in the working directory and anything else is
    taken as a file path.
    """
    destination = output.lower()

    if destination == "stdout":
        return logging.StreamHandler(sys.stdout)
    if destination == "stderr":
        return logging.StreamHandler(sys.stderr)
    if destination == "file":
        started = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
        return logging.FileHandler(f"log_{started}.txt")

    return logging.FileHandler(output)


def setup_logging(config: LoggingConfig, service_name: str = "kline-ingest") -> logging.Handler:
    """
    Route all logging through a single handler on the root logger.

    Returns:
        The installed handler
    """
    handler = build_handler(config.output)
    handler.setFormatter(JSONFormatter() if config.format == "json" else TextFormatter())
    handler.addFilter(ServiceContextFilter(service_name))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(config.level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging to {config.output} as {config.format} at {config.level}")
    return handler
