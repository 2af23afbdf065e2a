"""Centralized logging configuration."""

import logging
import os
import sys
from typing import Any, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)
        level: Optional log level override. Falls back to the LOG_LEVEL
            environment variable, then INFO.

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    log_level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Avoid duplicate handlers
    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logger.level)
        console_handler.setFormatter(
            logging.Formatter(fmt=DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(console_handler)

    return logger


def log_sync_operation(logger: logging.Logger, message: str, **details: Any) -> None:
    """Emit one sync audit line.

    Every reconciliation step goes through here so that operators can grep a
    single prefix to follow a proposal across both stores.

    Args:
        logger: Logger of the calling module
        message: Human readable description of the step
        **details: Structured fields attached via ``extra``
    """
    logger.info(f"SYNC: {message}", extra={"sync": details})
