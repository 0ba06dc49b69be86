"""
Structured JSON logging for the sync service.

Every record is written as one JSON object to stdout and to a per-session
file under ``LOG_DIR``. Sync code attaches the account it is working on
through ``extra=log_context(...)`` so log lines can be filtered by owner,
account or invocation.
"""

import json
import logging
import os
import sys
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

log_dir = Path(os.getenv("LOG_DIR", "logs"))
log_dir.mkdir(parents=True, exist_ok=True)

# One file per process start
SESSION_ID = str(uuid.uuid4())[:8]
LOG_FILENAME = f"sync_{datetime.now(timezone.utc).strftime('%Y-%m-%d')}_{SESSION_ID}.log"

# Record attributes copied into the JSON payload when present
CONTEXT_FIELDS = ("request_id", "platform", "owner_id", "account_id")

# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


def log_context(
    platform: Optional[str] = None,
    owner_id: Optional[str] = None,
    account_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, str]:
    """Build the ``extra`` mapping for a sync log call, leaving out unknown fields."""
    fields = {
        "request_id": request_id,
        "platform": platform,
        "owner_id": owner_id,
        "account_id": account_id,
    }
    return {key: value for key, value in fields.items() if value is not None}


class JSONFormatter(logging.Formatter):
    """Renders a record as one JSON line (UTC timestamps)."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.lineno}",
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(payload, default=str, ensure_ascii=False)


def _configure_root() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JSONFormatter())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    console_handler.setFormatter(JSONFormatter())

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


_configure_root()


def setup_logger(name: str) -> logging.Logger:
    """Get logger for a module."""
    logger = logging.getLogger(name)
    logger.propagate = True
    return logger
