"""Utility functions and notification system for stackbackup."""

import os
import sys
import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


LOGGER_NAME = 'stackbackup'

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class NotificationManager:
    """Console and file logging for backup runs."""

    def __init__(self, config):
        """Initialize notification manager.

        Args:
            config: Configuration object
        """
        self.config = config
        self.logger = self._setup_logger()
        self.use_unicode = self._check_unicode_support()

    def _check_unicode_support(self) -> bool:
        """Check if the terminal supports Unicode characters."""
        try:
            "✅".encode(sys.stdout.encoding or 'utf-8')
            return True
        except (UnicodeEncodeError, LookupError):
            return False

    def _setup_logger(self) -> logging.Logger:
        """Setup logging configuration."""
        logger = logging.getLogger(LOGGER_NAME)

        # Handlers are rebuilt on every construction (e.g. after --verbose)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        level = getattr(logging, str(self.config.get('notifications.level', 'INFO')).upper(), logging.INFO)
        logger.setLevel(level)

        if self.config.get('notifications.console', True):
            console_handler = logging.StreamHandler(sys.stdout)
            if hasattr(console_handler.stream, 'reconfigure'):
                try:
                    console_handler.stream.reconfigure(encoding='utf-8', errors='replace')
                except (AttributeError, OSError, ValueError):
                    pass

            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            ))
            logger.addHandler(console_handler)

        log_file = self.config.get('notifications.file')
        if log_file:
            log_path = Path(str(log_file)).expanduser()
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_path, encoding='utf-8')
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            logger.addHandler(file_handler)

        return logger

    def _format_message(self, message: str, prefix: str) -> str:
        """Format message with a prefix, falling back to ASCII when needed."""
        if self.use_unicode:
            return f"{prefix} {message}"
        ascii_prefixes = {
            "✅": "[SUCCESS]",
            "❌": "[FAILED]",
        }
        return f"{ascii_prefixes.get(prefix, prefix)} {message}"

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def success(self, message: str) -> None:
        """Log success message."""
        self.logger.info(self._format_message(message, "✅"))

    def failure(self, message: str) -> None:
        """Log failure message."""
        self.logger.error(self._format_message(message, "❌"))


def generate_timestamp(moment: Optional[datetime] = None) -> str:
    """Generate timestamp string for snapshot naming.

    Args:
        moment: Point in time to format (defaults to now)

    Returns:
        Timestamp string in format YYYYMMDD_HHMMSS
    """
    return (moment or datetime.now()).strftime(TIMESTAMP_FORMAT)


def format_size(size_bytes: float) -> str:
    """Format file size in human readable format."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def get_directory_size(directory: Union[str, Path]) -> int:
    """Get total size of directory in bytes."""
    total_size = 0
    for dirpath, dirnames, filenames in os.walk(directory):
        for filename in filenames:
            filepath = os.path.join(dirpath, filename)
            if os.path.exists(filepath):
                total_size += os.path.getsize(filepath)
    return total_size


def ensure_directory(path: Union[str, Path]) -> Path:
    """Ensure directory exists, create if it doesn't.

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj


def is_command_available(command: str) -> bool:
    """Check if a command is available in the system PATH."""
    return shutil.which(command) is not None
