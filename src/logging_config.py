"""Log setup for the billing worker and cron tasks.

LOG_FORMAT=text (default) prints one readable line per record; LOG_FORMAT=json
prints JSON lines for the log aggregator. Either way, records logged with
``extra={"subscription_id": ..., "sweep": ...}`` carry that context.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from config.settings import settings

CONTEXT_KEYS = ("subscription_id", "sweep")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s%(context)s: %(message)s"


class ContextFilter(logging.Filter):
    """Render sweep/subscription context as a short ``[k=v]`` suffix for text logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = [f"{key}={getattr(record, key)}" for key in CONTEXT_KEYS if hasattr(record, key)]
        record.context = f" [{' '.join(parts)}]" if parts else ""
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({key: getattr(record, key) for key in CONTEXT_KEYS if hasattr(record, key)})
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None):
    """Install a single stdout handler on the root logger."""
    level = (level or settings.LOG_LEVEL).upper()
    fmt = fmt or settings.LOG_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(ContextFilter())
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))

    for noisy in ("httpx", "httpcore", "apscheduler.executors", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
