"""
Logging for the reconciliation core.

Every module logs through ``get_logger(__name__)``; keyword context
(``job_id``, ``district_id``, timings...) travels on the record as
``extra_data`` and is flattened into the JSON file output. Two fixed child
loggers carry the audit trail (``month_end.audit``) and cycle/flush timings
(``month_end.performance``).
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from functools import partialmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

ROOT_LOGGER_NAME = "month_end"
AUDIT_LOGGER = "audit"
PERFORMANCE_LOGGER = "performance"

# Context keys promoted ahead of the free-form extras in JSON output
_CORRELATION_KEYS = ("job_id", "district_id", "target_month")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; non-JSON values (datetimes, enums) go through ``str()``."""

    def format(self, record: logging.LogRecord) -> str:
        context: Dict[str, Any] = dict(getattr(record, "extra_data", None) or {})
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key in _CORRELATION_KEYS:
            if key in context:
                payload[key] = context.pop(key)
        payload.update(context)
        payload["source"] = f"{record.module}:{record.funcName}:{record.lineno}"
        payload["task"] = getattr(record, "taskName", None)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    ``logger.info("Cycle processed", job_id=job.id, days_stable=3)``.
    ``None`` values are dropped from the context.
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def log(self, level: int, message: str, *, exc_info: bool = False, **context: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra_data = {key: value for key, value in context.items() if value is not None}
        self._logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data}, stacklevel=2)

    debug = partialmethod(log, logging.DEBUG)
    info = partialmethod(log, logging.INFO)
    warning = partialmethod(log, logging.WARNING)
    error = partialmethod(log, logging.ERROR)
    exception = partialmethod(log, logging.ERROR, exc_info=True)


def _handlers(log_level: str, log_file: Optional[str], enable_console: bool) -> Dict[str, Dict[str, Any]]:
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "plain",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["json_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
            "formatter": "json",
            "level": log_level,
        }
    return handlers


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True,
) -> None:
    """
    Configure the ``month_end`` logger tree (and quiet SQLAlchemy's engine logger).

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: JSON lines output path, rotated at 10MB
        enable_console: human-readable lines on stdout
    """
    handlers = _handlers(log_level.upper(), log_file, enable_console)
    names = list(handlers)
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "plain": {
                "format": "%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            ROOT_LOGGER_NAME: {"level": log_level.upper(), "handlers": names, "propagate": False},
            "sqlalchemy.engine": {"level": "WARNING", "handlers": names, "propagate": False},
        },
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under ``month_end``; ``__name__`` of package modules is used as-is."""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return StructuredLogger(name)


def log_business_event(
    event_type: str,
    details: Mapping[str, Any],
    job_id: Optional[str] = None,
    district_id: Optional[str] = None,
) -> None:
    """Audit trail entry for a job lifecycle event (started, extended, finalized, cancelled, failed)."""
    get_logger(AUDIT_LOGGER).info(
        f"reconciliation event: {event_type}",
        event_type=event_type,
        job_id=job_id,
        district_id=district_id,
        **details,
    )


def log_performance(operation: str, duration_ms: float, additional_data: Optional[Mapping[str, Any]] = None) -> None:
    get_logger(PERFORMANCE_LOGGER).info(
        f"timing: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 3),
        **dict(additional_data or {}),
    )
