"""Structured logging for the knowledge graph engine.

Production output is one JSON object per line; with ``DEBUG`` set the output is
a readable single line. Log lines carry the request, organization and trace
ids bound through :class:`LogContext`, so a clustering run or gap report can
be followed across services.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
organization_id_var: ContextVar[str | None] = ContextVar(
    "organization_id", default=None
)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "organization_id": organization_id_var,
    "trace_id": trace_id_var,
}

# Everything a bare LogRecord carries; the rest came in through extra={...}
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "sqlalchemy.engine")


def get_request_id() -> str | None:
    return request_id_var.get()


def get_organization_id() -> str | None:
    return organization_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()


def _bound_context() -> dict[str, str]:
    return {name: var.get() for name, var in _CONTEXT_VARS.items() if var.get()}


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Example:
        {"timestamp": "2026-03-02T09:00:00+00:00", "level": "INFO",
         "logger": "services.topic_clusterer", "message": "Auto-clustering complete",
         "organization_id": "org-1", "extra": {"cluster_count": 3}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_bound_context(),
        }

        if record.exc_info:
            exc_type = record.exc_info[0]
            entry["exception"] = self.formatException(record.exc_info)
            entry["exception_type"] = exc_type.__name__ if exc_type else None

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``2026-03-02 09:00:00.000 | INFO     | services.gap_detector | [org-1234] message``"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        org_id = get_organization_id()
        prefix = f"[{org_id[:8]}] " if org_id else ""
        line = (
            f"{timestamp} | {record.levelname:<8} | {record.name} | "
            f"{prefix}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level name; defaults to ``Settings.log_level``
        json_format: JSON output; defaults to on unless ``Settings.debug``
    """
    if level is None or json_format is None:
        from config import get_settings

        settings = get_settings()
        level = level or settings.log_level
        json_format = (not settings.debug) if json_format is None else json_format

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger; configures the root logger if nothing else has."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


class LogContext:
    """Bind request/organization/trace ids to every log line in a block.

    Usage:
        async with LogContext(organization_id=org_id):
            report = await detector.build_report(org_id)
    """

    def __init__(
        self,
        request_id: str | None = None,
        organization_id: str | None = None,
        trace_id: str | None = None,
    ):
        self._values = {
            "request_id": request_id,
            "organization_id": organization_id,
            "trace_id": trace_id,
        }
        self._tokens: list = []

    def __enter__(self):
        self._tokens = [
            (_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value))
            for name, value in self._values.items()
            if value
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
