"""
Structured Logging Configuration Module

JSON-formatted structured logging for check lifecycle and checkbook operations.
All component loggers live under the "treasury" namespace. Lines about a check
or checkbook carry its id, serial and state change as top-level keys so a
check's whole life can be grepped out of the log, and every line emitted while
serving a request carries that request's correlation id.
"""

import contextvars
import logging
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional


# Request id of the operation being served in this context
_correlation_id = contextvars.ContextVar('correlation_id', default=None)

# Record attributes promoted to top-level keys of a JSON line
ENTITY_FIELDS = ("check_id", "checkbook_id", "serial_number", "from_state", "to_state")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: Optional[str]):
    """Tag every log line and unit of work in this context with ``correlation_id``"""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None) or get_correlation_id(),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
        }
        for field in ENTITY_FIELDS:
            log_entry[field] = getattr(record, field, None)
        log_entry["extra"] = getattr(record, 'extra', None)

        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO", logger_name: str = "treasury",
                  fmt: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Root logger name for the engine
        fmt: "json" for structured output, "text" for plain lines
        log_file: Write to this file instead of stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "treasury") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, **entity):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: Actor performing the action
        action: Action being performed (e.g. "check_deposit", "checkbook_create")
        resource: Resource being acted upon (e.g. "check:<id>")
        correlation_id: Request id; defaults to the one of the current context
        extra: Additional structured data
        **entity: Any of ENTITY_FIELDS (check_id, serial_number, from_state, ...)
    """
    unknown = set(entity) - set(ENTITY_FIELDS)
    if unknown:
        raise TypeError(f"log_action got unexpected fields: {', '.join(sorted(unknown))}")

    numeric_level = getattr(logging, level.upper())
    if not logger.isEnabledFor(numeric_level):
        return

    record = logger.makeRecord(
        logger.name, numeric_level, __name__, 0, message, (), None
    )

    correlation_id = correlation_id or get_correlation_id()
    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra
    for field, value in entity.items():
        if value is not None:
            setattr(record, field, value)

    logger.handle(record)


def log_transition(logger: logging.Logger, check_id: str, serial_number: int,
                   from_state: str, to_state: str, action: str,
                   user_id: Optional[str] = None, extra: Optional[dict] = None):
    """One INFO line for a check moving between lifecycle states"""
    log_action(
        logger, "info", f"Check #{serial_number} {from_state} -> {to_state}",
        user_id=user_id, action=f"check_{action}", resource=f"check:{check_id}",
        extra=extra, check_id=check_id, serial_number=serial_number,
        from_state=from_state, to_state=to_state,
    )
