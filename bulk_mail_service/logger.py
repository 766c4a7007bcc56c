"""Logging helpers for the bulk mail service."""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "BulkMailService") -> logging.Logger:
    """Return a :class:`logging.Logger` instance.

    Note: Logging configuration should be done via :func:`configure_logging`
    in the entry points (main.py, the CLI) to avoid duplicate handlers.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
