"""
Logging utility for the browser agent.
"""

import logging
import sys
from typing import Optional
from pathlib import Path

from ..config import settings


ROOT_LOGGER_NAME = "browser_agent"


class Logger:
    """Centralized logging configuration."""

    _instance: Optional[logging.Logger] = None

    @staticmethod
    def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
        """
        Get or create a logger instance.

        The package root logger is configured once with a console and a
        file handler. Every other name becomes a child of it so records
        propagate to the same handlers.

        Args:
            name: Logger name

        Returns:
            Configured logger instance
        """
        if not name.startswith(ROOT_LOGGER_NAME):
            name = f"{ROOT_LOGGER_NAME}.{name}"

        if Logger._instance is not None:
            return logging.getLogger(name)

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(logging.DEBUG)

        # Create logs directory if it doesn't exist
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)

        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        console_handler.setFormatter(console_formatter)

        # File handler
        file_handler = logging.FileHandler(log_dir / "agent.log", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
        )
        file_handler.setFormatter(file_formatter)

        root.addHandler(console_handler)
        root.addHandler(file_handler)

        Logger._instance = root
        return logging.getLogger(name)


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """Convenience function to get a logger."""
    return Logger.get_logger(name)
