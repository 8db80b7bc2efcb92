"""MetaSync — Structured JSON Logging."""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping, Tuple
from metasync.config import settings

# Extra fields copied from `logger.x(..., extra={...})` into the JSON line
EXTRA_FIELDS = (
    "sync_run_id",
    "account_id",
    "endpoint",
    "status_code",
    "attempt",
    "duration_ms",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with sync run and account context."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        return json.dumps(log_entry, default=str)


class SyncLogAdapter(logging.LoggerAdapter):
    """Stamps every record with the bound sync context.

    Per-call `extra` is merged on top of the bound fields instead of
    replacing them.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "SyncLogAdapter":
        return SyncLogAdapter(self.logger, {**self.extra, **context})


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with structured JSON handler."""
    logger = logging.getLogger(f"metasync.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


def bind_logger(logger: logging.Logger, **context: Any) -> SyncLogAdapter:
    """Logger that carries e.g. sync_run_id/account_id on every line."""
    return SyncLogAdapter(logger, context)
