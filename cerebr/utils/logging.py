# cerebr/utils/logging.py

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from cerebr.config.settings import BASE_DIR

LOG_FILE_NAME = "cerebr.log"
LOG_MAX_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 3

_FORMAT = logging.Formatter(
    "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def log_dir() -> Path:
    """CEREBR_LOG_DIR if set, else <project>/logs. Created on first use."""
    path = Path(os.getenv("CEREBR_LOG_DIR", "").strip() or BASE_DIR / "logs")
    path.mkdir(parents=True, exist_ok=True)
    return path


def _level_from_env(default: int = logging.INFO) -> int:
    name = os.getenv("CEREBR_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def mask_secret(value: str, keep: int = 4) -> str:
    """sk-abcdef123456 -> sk-a...3456; short values are fully masked."""
    if not value:
        return "<empty>"
    if len(value) <= keep * 2:
        return "*" * len(value)
    return f"{value[:keep]}...{value[-keep:]}"


def get_logger(name: str = "cerebr") -> logging.Logger:
    """
    Return a logger that writes to a rotating file and to the console.
    Repeated calls for the same name reuse the existing handlers.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = _level_from_env()
    logger.setLevel(level)

    fh = RotatingFileHandler(
        log_dir() / LOG_FILE_NAME,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(_FORMAT)

    # Console shows warnings only; streamed replies own stdout
    ch = logging.StreamHandler()
    ch.setLevel(max(level, logging.WARNING))
    ch.setFormatter(_FORMAT)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger
