"""Utility helpers for the tape tools runtime."""

from .logging_config import close_file_logging, setup_logging

__all__ = ["close_file_logging", "setup_logging"]
