"""Logger setup for the refresh worker.

Production runs emit one JSON object per line so the job context (arq job id,
attempt, refresh method, slug) can be searched. Setting ``JSON_LOGS=false``
switches to rich console output for local runs.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

from indexer.main.config import get_loglevel
from indexer.main.log_context import get_log_context

JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "true").lower() in {"1", "true", "yes", "on"}

# Attributes every LogRecord has; anything else on a record came from ``extra``
_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

_THIRD_PARTY_LEVELS = {
    # arq logs every job start and finish at INFO
    "arq": logging.WARNING,
    "aiohttp": logging.WARNING,
    "asyncio": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
}


class ContextJSONFormatter(logging.Formatter):
    """Render a record, its ``extra`` fields and the job context as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Explicit extra wins over the ambient job context
        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_ATTRS or key.startswith("_") or value is None:
                continue
            payload.setdefault(key, value)

        for key, value in get_log_context().items():
            payload.setdefault(key, value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _build_handler(level: int) -> logging.Handler:
    if JSON_LOGS_ENABLED:
        handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(ContextJSONFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, markup=False, show_path=True)
    handler.setLevel(level)
    return handler


def quiet_third_party_loggers(level: int) -> None:
    for name, quiet_level in _THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else quiet_level)


quiet_third_party_loggers(get_loglevel())


def get_logger(module_name: str) -> logging.Logger:
    logger = logging.getLogger(module_name)
    if not logger.handlers:
        level = get_loglevel()
        logger.setLevel(level)
        logger.addHandler(_build_handler(level))
        # Handlers live on each module logger; the root would print twice
        logger.propagate = False
    return logger
