"""Logging configuration for the kubeadmctl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from kubeadmctl.config import Config

NOISY_LOGGERS = ('paramiko', 'urllib3', 'kubernetes')


def configure_logging(debug: bool = False, level: Optional[str] = None, log_file: Optional[str] = None,
                      max_size_mb: int = 100, backup_count: int = 5) -> None:
    """Configure root logging for a CLI invocation.

    Args:
        debug: Force DEBUG level and keep library loggers verbose
        level: Level name used when not in debug mode (defaults to LOG_LEVEL)
        log_file: Optional path of a rotating log file
        max_size_mb: Rotation size of the log file
        backup_count: Rotated files to keep
    """
    log_level = logging.DEBUG if debug else getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)
    formatter = logging.Formatter(Config.LOG_FORMAT)

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Disable debug logging for noisy libraries
    if not debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
