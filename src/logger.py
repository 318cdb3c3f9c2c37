"""
Logging Configuration Module.

Provides a small wrapper around the standard library logging package that
configures console and rotating file output for the scanner.

Features:
- Console handler with a human readable format
- Rotating file handler under the configured log directory
- Dict messages rendered as JSON so call sites can log structured context
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler


class StructuredFormatter(logging.Formatter):
    """Formatter that renders dict messages as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, dict):
            record = logging.makeLogRecord(record.__dict__)
            record.msg = json.dumps(record.msg, default=str)
            record.args = None
        return super().format(record)


class LogManager:
    """
    Builds the application logger.

    Attributes:
        logger (logging.Logger): Configured logger instance
    """

    FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s"

    def __init__(
        self,
        app_name: str,
        log_dir: str = "logs",
        development: bool = False,
        level: int = logging.INFO,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ):
        """Initialize the log manager.

        Args:
            app_name (str): Logger name, also used for the log file name.
            log_dir (str): Directory for log files.
            development (bool): When true, only log to the console.
            level (int): Logging level.
            max_bytes (int): Size at which the log file is rotated.
            backup_count (int): Number of rotated files to keep.
        """
        self.logger = logging.getLogger(app_name)
        self.logger.setLevel(level)
        self.logger.propagate = False

        # Avoid duplicate handlers when the module is imported more than once
        if self.logger.handlers:
            return

        formatter = StructuredFormatter(self.FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if not development:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, f"{app_name}.log"),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
