"""Logging bootstrap shared by the API server and the CLI."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

__all__ = ["JsonFormatter", "setup_logging"]

_ROOT_LOGGER = "lorawan_as"


def _json_payload(record: logging.LogRecord) -> str:
    base = {
        "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
    }
    extra = getattr(record, "extra", None)
    if isinstance(extra, dict):
        base.update(extra)
    if record.exc_info:
        base["exc_info"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(base, ensure_ascii=False, default=str)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, merged with the ``extra={"extra": {...}}`` dict."""

    def format(self, record: logging.LogRecord) -> str:
        return _json_payload(record)


def setup_logging(level: Optional[str] = None, *, json_output: bool = True) -> logging.Logger:
    logger = logging.getLogger(_ROOT_LOGGER)
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    return logger
