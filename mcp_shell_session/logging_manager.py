"""Logging setup for the shell session pool."""
import logging
import os
from pathlib import Path

LOGGER_NAME = 'shell_session'
LOG_FILE = 'mcp_shell_session.log'


def configure_logging(log_dir: str, level: str = 'DEBUG') -> logging.Logger:
    """Configure the package logger to write to a file only.

    Nothing is written to stdout or stderr since stdout carries MCP traffic.
    Safe to call more than once: the file handler is added a single time per
    log file.
    """
    path = Path(log_dir)
    path.mkdir(exist_ok=True, parents=True)
    log_file = path / LOG_FILE

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.DEBUG))
    logger.propagate = False  # Don't propagate to root logger

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_file):
            return logger

    file_handler = logging.FileHandler(str(log_file))
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - [%(threadName)s] - %(name)s - %(levelname)s - %(message)s'
    ))
    logger.addHandler(file_handler)
    return logger
