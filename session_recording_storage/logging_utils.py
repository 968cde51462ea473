"""
Structured logging for the recording pipeline.

Every module logs through ``logging.getLogger(__name__)``, all below the
``session_recording_storage`` logger. A host process that ships logs to
a collector calls ``configure_structured_logging`` once to render those
records as one JSON object per line. ``session_logger`` tags records
with the session they concern, so one recording can be followed from
ingest through flush to read in the collected logs.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

LOGGER_ROOT = "session_recording_storage"

# Attributes every LogRecord carries; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """Render a record as a single-line JSON object.

    Fixed fields are ``timestamp`` (UTC, taken from the record's creation
    time), ``level``, ``logger`` and ``message``, plus ``exception`` when
    the record carries exc_info. Fields passed through ``extra``
    (``session_id``, ``key``, ...) follow at the top level; values JSON
    cannot represent are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(
            (name, _jsonable(value))
            for name, value in vars(record).items()
            if name not in _RECORD_ATTRS and not name.startswith("_")
        )
        return json.dumps(entry)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = LOGGER_ROOT,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Emit ``logger_name``'s records to ``stream`` as JSON lines.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger;
            None means the root logger)
        stream: Output stream (default: stderr, keeping stdout free for data)

    Returns:
        The configured logger. Handlers already attached to it are
        replaced, so calling this again reconfigures instead of
        duplicating output.
    """
    logger = logging.getLogger(logger_name)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredJsonFormatter())
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    return logger


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Adds fixed context, usually ``session_id``, to every record.

    Context passed per call through ``extra`` wins over the adapter's.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def session_logger(logger: logging.Logger, session_id: str, **context: Any) -> SessionLoggerAdapter:
    """Wrap ``logger`` so its records carry ``session_id`` and ``context``."""
    return SessionLoggerAdapter(logger, {"session_id": session_id, **context})
