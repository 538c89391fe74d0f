"""Centralized logging configuration for the tape tools."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_path: str | Path | None = None, level: int = logging.INFO) -> logging.Logger:
    """Configure root logger with a console handler and, if a path is given, a file handler.

    Reuses existing handlers on repeated calls, so a file list can log every
    input file to its own log while sharing one console.
    """

    root = logging.getLogger()
    root.setLevel(level)

    existing_files = {
        getattr(h, "baseFilename", None) for h in root.handlers if hasattr(h, "baseFilename")
    }
    has_console = any(isinstance(h, logging.StreamHandler) and not hasattr(h, "baseFilename") for h in root.handlers)

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATEFMT)

    if log_path is not None:
        log_file = Path(log_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if str(log_file.resolve()) not in existing_files:
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(formatter)
            root.addHandler(fh)

    if not has_console:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(formatter)
        root.addHandler(sh)

    for handler in root.handlers:
        handler.setLevel(level)

    logger = logging.getLogger(__name__)
    logger.debug("Logging initialized: %s", log_path or "console only")
    return logger


def close_file_logging(log_path: str | Path) -> None:
    """Detach and close the file handler for one log file."""

    target = str(Path(log_path).resolve())
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "baseFilename", None) == target:
            root.removeHandler(handler)
            handler.close()
