"""Runtime logging configuration with bounded retention."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from branchline.settings import env, int_env

DEFAULT_LOG_PATH = "work/logs/branchline.log"

_CONFIGURED = False


def configure_runtime_logging(*, force: bool = False) -> Path:
    """Configure console + rotating file logs once per process; returns the log path."""
    global _CONFIGURED
    log_path = Path(env("BRANCHLINE_LOG_PATH", DEFAULT_LOG_PATH) or DEFAULT_LOG_PATH)
    if _CONFIGURED and not force:
        return log_path

    level_name = env("BRANCHLINE_LOG_LEVEL", "INFO").upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)
    max_bytes = int_env(
        "BRANCHLINE_LOG_MAX_BYTES", 5 * 1024 * 1024, minimum=64 * 1024, maximum=100 * 1024 * 1024
    )
    backup_count = int_env("BRANCHLINE_LOG_BACKUP_COUNT", 10, minimum=1, maximum=120)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        filename=log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.addHandler(stream_handler)
    root.addHandler(file_handler)

    access_level_name = env("BRANCHLINE_ACCESS_LOG_LEVEL", "WARNING").upper()
    access_level = getattr(logging, access_level_name, logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(access_level)

    _CONFIGURED = True
    return log_path
