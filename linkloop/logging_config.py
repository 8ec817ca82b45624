"""Structured logging.

One JSON object per line in production, a compact text line in
development. Every line carries the request context (correlation id and
the account being served) when one is active, plus any keyword fields
passed at the call site::

    logger = get_logger(__name__)
    logger.info("Alert opened", alert_id=str(alert.id), family="low")
"""

import json
import logging
import logging.config
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Set by the correlation middleware and the auth dependency
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)
account_id_ctx: ContextVar[str | None] = ContextVar("account_id", default=None)

DEFAULT_SERVICE_NAME = "linkloop-api"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "apscheduler")


def request_context() -> dict[str, str]:
    """Correlation and account ids of the current task, if set."""
    context = {}
    correlation_id = correlation_id_ctx.get()
    if correlation_id:
        context["correlation_id"] = correlation_id
    account_id = account_id_ctx.get()
    if account_id:
        context["account_id"] = account_id
    return context


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "extra_fields", None) or {}


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON object.

    Keys: timestamp, level, service, logger, message, the request context,
    the call-site fields, and for errors the exception and code location.
    """

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            **request_context(),
            **_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.levelno >= logging.ERROR:
            entry["location"] = f"{record.pathname}:{record.lineno} in {record.funcName}"
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """One readable line per record for local development.

    Example: ``12:00:01 INFO  linkloop-api [abc-123] Alert opened family=low``
    """

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        correlation_id = correlation_id_ctx.get() or "-"
        parts = [
            when,
            f"{record.levelname:<5}",
            self.service_name,
            f"[{correlation_id}]",
            record.getMessage(),
        ]
        parts.extend(f"{key}={value}" for key, value in _fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    service_name: str = DEFAULT_SERVICE_NAME,
) -> None:
    """Route all logging to stdout through the chosen formatter.

    Args:
        log_format: 'json' or 'text'
        log_level: Root level name; unknown names fall back to INFO
        service_name: Value of the ``service`` key on every line
    """
    level = log_level.upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"
    formatter = JsonFormatter if log_format.lower() == "json" else TextFormatter

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"()": formatter, "service_name": service_name},
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "default",
                },
            },
            "root": {"level": level, "handlers": ["stdout"]},
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        }
    )


class StructuredLogger:
    """Wraps a stdlib logger so fields can be passed as keywords."""

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(
        self, level: int, msg: str, fields: dict[str, Any], exc_info: bool = False
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {"extra_fields": fields} if fields else None
        # stacklevel points the record at the caller, not this wrapper
        self._logger.log(level, msg, exc_info=exc_info, extra=extra, stacklevel=3)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """ERROR with the traceback of the exception being handled."""
        self._log(logging.ERROR, msg, fields, exc_info=True)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)
