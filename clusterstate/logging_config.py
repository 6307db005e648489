"""Structured logging setup.

Two formatters are available, selected by ``settings.log_format``:

- ``json``: one JSON object per line, suitable for log shippers
- ``text``: human-readable single-line output for local development

Any attributes passed through ``extra=`` on a log call are collected under
the ``extra`` key of the JSON payload (or appended as ``key=value`` pairs in
text mode), so repository code can attach operation names and affected
resource ids without string formatting.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from clusterstate.config import settings

SERVICE_NAME = "clusterstate"

# Attributes present on every LogRecord; anything else came from extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that still surfaces structured extras."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = _record_extras(record)
        if extras:
            rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
            message = f"{message} | {rendered}"
        return message


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure the root logger with the formatter selected in settings.

    Args:
        level: Override for ``settings.log_level``.
        log_format: Override for ``settings.log_format`` ("json" or "text").
    """
    level = (level or settings.log_level).upper()
    log_format = (log_format or settings.log_format).lower()

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "text":
        handler.setFormatter(TextFormatter())
    else:
        handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if not getattr(h, "_clusterstate", False)]
    handler._clusterstate = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)

    # SQL statement logging is controlled by settings.db_echo instead
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
