"""
Centralized logging configuration.

Provides a configured logger instance with a rotating file handler.
Logs are written to the platform log directory (see ``get_log_dir``).

Set LOG_TO_CONSOLE = True in core/settings/config.py to also output logs
to the terminal.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from platformdirs import user_log_path

_ROOT_LOGGER_NAME = "whisperflow"


def get_log_dir() -> Path:
    return user_log_path(_ROOT_LOGGER_NAME, appauthor=False, ensure_exists=True)


_logger_instance: Optional[logging.Logger] = None


def get_logger(name: str = _ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (defaults to the root "whisperflow" logger).
              Module names like "src.whisperflow.cli" are transformed to
              "whisperflow.cli" to keep the logger hierarchy intact.

    Returns:
        Logger whose records reach the shared file (and console) handlers.
    """
    global _logger_instance

    if name.startswith("src.whisperflow."):
        name = name.replace("src.whisperflow.", "whisperflow.", 1)
    elif name == "src.whisperflow":
        name = _ROOT_LOGGER_NAME

    if _logger_instance is None:
        from ..core.settings.config import LOG_TO_CONSOLE, get_log_level

        root_logger = logging.getLogger(_ROOT_LOGGER_NAME)

        if root_logger.handlers:
            _logger_instance = root_logger
        else:
            level = get_log_level()
            root_logger.setLevel(level)

            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

            log_file = get_log_dir() / "app.log"
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

            if LOG_TO_CONSOLE:
                console_handler = logging.StreamHandler(sys.stderr)
                console_handler.setLevel(level)
                console_handler.setFormatter(formatter)
                root_logger.addHandler(console_handler)

            root_logger.propagate = False

            _logger_instance = root_logger

    if name == _ROOT_LOGGER_NAME:
        return _logger_instance

    return logging.getLogger(name)


def set_console_level(level: int) -> None:
    """Attach (or retune) a stderr handler, used by the CLI ``--verbose`` flag."""
    root_logger = get_logger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(
            handler, RotatingFileHandler
        ):
            handler.setLevel(level)
            return

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(levelname)s %(name)s: %(message)s")
    )
    root_logger.addHandler(console_handler)


def shutdown_logging() -> None:
    """Shutdown logging and close all file handlers to release file locks."""
    global _logger_instance
    root_logger = logging.getLogger(_ROOT_LOGGER_NAME)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    _logger_instance = None
