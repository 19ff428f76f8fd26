"""WatchSync logging: client log files and the drift-correction trace."""
from __future__ import annotations
import datetime
import json
import logging
import logging.handlers
from pathlib import Path
from typing import Any

from watchsync.config import ClientSettings

ROOT_LOGGER = "watchsync"
LOG_FILE = "watchsync-client.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# websockets logs every frame at DEBUG
_NOISY_LOGGERS = ("websockets",)


def level_from_name(name: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(name.upper()) if name else default
    return level if isinstance(level, int) else default


def configure_logging(settings: ClientSettings) -> logging.Logger:
    """
    Route the `watchsync.*` loggers to a rotating file and the console.

    The file always records DEBUG so sync decisions can be reviewed after a
    session; the console follows `client.log_level`. Calling it again swaps
    the handlers instead of stacking new ones.
    """
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    console_level = level_from_name(settings.log_level)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(LOG_FORMAT)
    # 5MB x 5 files
    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    logger.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(fmt)
    logger.addHandler(console)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(console_level, logging.WARNING))
    return logger


class CorrectionTrace:
    """Appends one JSON line per drift-correction tick, one file per UTC day."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)

    def path_for(self, when: datetime.datetime) -> Path:
        return self.log_dir / f"corrections-{when:%Y-%m-%d}.jsonl"

    def write(self, **fields: Any) -> Path:
        now = datetime.datetime.now(datetime.timezone.utc)
        record = {"logged_at": now.isoformat(timespec="milliseconds"), **fields}
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(now)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
        return path
