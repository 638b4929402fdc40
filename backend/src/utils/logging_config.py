"""
Logging setup for the lifecycle engine.

Every component logs through one of a fixed set of named loggers under the
``lifecycle`` namespace:

    api        HTTP requests and error mapping
    services   executor, facade, status ledger
    scheduler  durable timers and their wakes
    jobs       sweeps, reconciliation, escrow settlement runs
    hooks      escrow calls and domain event fan-out
    db         datastore errors and migrations

Development writes one readable line per record to stdout. Production
(LIFECYCLE_ENV=production) writes JSON lines to a rotating file per logger
under LIFECYCLE_LOG_DIR. LIFECYCLE_LOG_LEVEL sets the level for all of them.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional


LOGGER_NAMESPACE = "lifecycle"
LOGGER_NAMES = ["api", "services", "scheduler", "jobs", "hooks", "db"]

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: timestamp (UTC, ISO 8601), level, logger, message, module,
    function, line, exception when present, and every field passed
    through ``extra=``.
    """

    # Attribute names every LogRecord has; the rest came in through extra=
    _STANDARD_ATTRS = frozenset(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS and not key.startswith("_")
        )
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[2026-03-01 18:00:00] INFO - lifecycle.jobs - end_sweep: 2 found``"""

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def _log_level() -> int:
    name = os.environ.get("LIFECYCLE_LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def _production() -> bool:
    return os.environ.get("LIFECYCLE_ENV", "development").lower() == "production"


def _build_handler(short_name: str, level: int, log_dir: Optional[Path]) -> logging.Handler:
    if log_dir is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ConsoleFormatter())
    else:
        handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{short_name}.log",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        handler.setFormatter(JSONFormatter())
    handler.setLevel(level)
    return handler


def configure_logging() -> Dict[str, logging.Logger]:
    """
    (Re)build the lifecycle loggers from the environment.

    Existing handlers are replaced, so calling this twice does not
    duplicate output. Loggers do not propagate to the root logger.

    Returns:
        Short logger name -> Logger
    """
    level = _log_level()
    log_dir = None
    if _production():
        log_dir = Path(os.environ.get("LIFECYCLE_LOG_DIR", "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)

    loggers = {}
    for short_name in LOGGER_NAMES:
        logger = logging.getLogger(f"{LOGGER_NAMESPACE}.{short_name}")
        logger.setLevel(level)
        logger.propagate = False
        logger.handlers.clear()
        logger.addHandler(_build_handler(short_name, level, log_dir))
        loggers[short_name] = logger
    return loggers


_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Return the lifecycle logger ``name``, configuring logging on first use.

    Raises:
        ValueError: If ``name`` is not one of LOGGER_NAMES
    """
    global _loggers
    if _loggers is None:
        _loggers = configure_logging()

    try:
        return _loggers[name]
    except KeyError:
        raise ValueError(
            f"Unknown logger name: {name}. Valid names: {', '.join(LOGGER_NAMES)}"
        )


def init_logging() -> Dict[str, logging.Logger]:
    """Configure logging at process start (API lifespan, operator script)."""
    global _loggers
    _loggers = configure_logging()
    return _loggers
