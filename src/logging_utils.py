"""Logging setup for the channel indexer.

Console output is configured as soon as the CLI starts. The run log lives in
the data directory next to ``videos.json``, so it can only be attached once the
settings have been loaded.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

ROOT_LOGGER = "channel_indexer"
RUN_LOG_NAME = "channel_indexer.log"
# worker threads are named after their stage (AcquireWorker-0, IndexWorker, ...)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
# per-request chatter of the index client
QUIET_LOGGERS = ("httpx", "httpcore")

_run_log_handler: logging.FileHandler | None = None


def get_logger(*names: str) -> logging.Logger:
    """Return the ``channel_indexer`` logger, or the dotted child named by ``names``."""
    return logging.getLogger(".".join((ROOT_LOGGER, *names)))


def resolve_level(level: int | str | None = None) -> int:
    if level is None:
        level = os.getenv("CHANNEL_INDEXER_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Log to the console at ``level`` (default: ``CHANNEL_INDEXER_LOG_LEVEL``)."""
    logging.basicConfig(
        level=resolve_level(level),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def attach_run_log(data_path: Path, log_file: Path | None = None) -> Path:
    """Append this run's records to the run log of a data directory.

    ``CHANNEL_INDEXER_LOG_FILE`` overrides the default location. A previously
    attached run log is replaced.
    """
    global _run_log_handler

    if log_file is None:
        override = os.getenv("CHANNEL_INDEXER_LOG_FILE")
        log_file = Path(override) if override else Path(data_path) / RUN_LOG_NAME
    log_file.parent.mkdir(parents=True, exist_ok=True)

    detach_run_log()
    handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    _run_log_handler = handler
    return log_file


def detach_run_log() -> None:
    global _run_log_handler

    if _run_log_handler is None:
        return
    logging.getLogger().removeHandler(_run_log_handler)
    _run_log_handler.close()
    _run_log_handler = None
