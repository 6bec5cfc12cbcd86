"""Structured logging configuration."""

import hashlib
import logging
import sys
from pythonjsonlogger import jsonlogger
from wabridge.infra.config import config


def setup_logging():
    """Setup structured JSON logging."""
    # Create logger
    logger = logging.getLogger("wabridge")
    if config.DEBUG:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

    # Remove existing handlers
    logger.handlers = []

    # Create JSON formatter
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Set levels for third-party loggers
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    return logger


def hash_identifier(value: str) -> str:
    """Short non-reversible hash of a phone-like identifier for log context."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


# Initialize logging
app_logger = setup_logging()
