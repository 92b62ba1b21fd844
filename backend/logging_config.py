import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LoggingConfig:
    """Centralized logging configuration for the console API."""

    def __init__(self):
        self._configured = False

    def setup_logging(
        self,
        log_level: str = "INFO",
        console_level: Optional[str] = None,
        file_level: Optional[str] = None,
        log_dir: Optional[str] = None,
        max_file_size: int = 10 * 1024 * 1024,  # 10 MB
        backup_count: int = 5,
        log_format: Optional[str] = None,
    ) -> None:
        """
        Set up logging for the API process.

        Args:
            log_level: Default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            console_level: Log level for console output (if different from log_level)
            file_level: Log level for file output (if different from log_level)
            log_dir: Directory for the rotating log file; no file output when None
            max_file_size: Maximum size of log files before rotation (in bytes)
            backup_count: Number of backup files to keep
            log_format: Custom log format string
        """
        if self._configured:
            return

        root_level = LEVEL_MAP.get(log_level.upper(), logging.INFO)
        console_log_level = LEVEL_MAP.get((console_level or log_level).upper(), root_level)
        file_log_level = LEVEL_MAP.get((file_level or log_level).upper(), root_level)
        formatter = logging.Formatter(log_format or DEFAULT_FORMAT)

        root_logger = logging.getLogger()
        root_logger.setLevel(min(console_log_level, file_log_level))

        console_handler = logging.StreamHandler()
        console_handler.setLevel(console_log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if log_dir:
            logs_path = Path(log_dir)
            logs_path.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                logs_path / "school-console.log",
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(file_log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        self._configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured - Console: {console_level or log_level}, File: {log_dir or 'disabled'}")

    def get_logger(self, name: str) -> logging.Logger:
        return logging.getLogger(name)


# Global instance
_logging_config = LoggingConfig()


def setup_logging(**kwargs) -> None:
    """Convenience function to set up logging."""
    _logging_config.setup_logging(**kwargs)


def get_logger(name: str) -> logging.Logger:
    """Convenience function to get a logger."""
    return _logging_config.get_logger(name)


def configure_from_env() -> None:
    """Configure logging from environment variables."""
    setup_logging(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        console_level=os.getenv("CONSOLE_LOG_LEVEL"),
        file_level=os.getenv("FILE_LOG_LEVEL"),
        log_dir=os.getenv("LOG_DIR"),
    )
