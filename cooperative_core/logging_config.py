"""
Structured logging for ledger operations

Every posting, approval and report run logs one JSON line. Lines emitted
while an API request is being served carry that request's correlation id
so a single posting can be followed across the recorder, the audit trail
and the engine that drove it.
"""

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional


ROOT_LOGGER = "scms"

# Correlation id of the request currently being served
_correlation_id = contextvars.ContextVar('correlation_id', default=None)

_STRUCTURED_FIELDS = ("user_id", "action", "resource", "extra")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str):
    """Tag every log line emitted inside the block with correlation_id"""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line; unset fields are left out"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None) or get_correlation_id(),
        }
        for field in _STRUCTURED_FIELDS:
            entry[field] = getattr(record, field, None)

        entry = {key: value for key, value in entry.items() if value is not None}
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain lines for a terminal, with the correlation id when there is one"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record):
        line = super().format(record)
        correlation_id = getattr(record, 'correlation_id', None) or get_correlation_id()
        return f"{line} [{correlation_id}]" if correlation_id else line


def setup_logging(level: str = "INFO", logger_name: str = ROOT_LOGGER,
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger that owns the handler; module loggers below it inherit it
        log_format: "json" for structured lines, "text" for plain lines
        log_file: Append to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    # Calling twice must not double every line
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger action with its actor and the record it touched.

    Args:
        logger: Module logger
        level: Level name (info, warning, error, ...)
        message: Human readable summary
        user_id: Actor that performed the action
        action: Short action name, e.g. "deposit" or "loan_approved"
        resource: Identifier of the account, loan or run acted upon
        correlation_id: Overrides the id of the current request
        extra: Further structured fields such as amounts and references
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(levelno, message, extra={key: value for key, value in fields.items() if value})
