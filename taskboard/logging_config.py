import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Settings


def setup_logging(settings: Settings, max_bytes: int = 10_000_000, backup_count: int = 5) -> logging.Logger:
    logger = logging.getLogger("taskboard")
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, settings.LOG_LEVEL))
    formatter = logging.Formatter(settings.LOG_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    if settings.LOG_FILE:
        Path(settings.LOG_FILE).parent.mkdir(exist_ok=True, parents=True)
        handler = RotatingFileHandler(
            settings.LOG_FILE, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
