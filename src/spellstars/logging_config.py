"""Logging configuration for the practice core."""
import logging
import logging.handlers
from pathlib import Path
from typing import List, Optional

from spellstars.config import LoggingSettings, settings

# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _build_handlers(logging_settings: LoggingSettings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if logging_settings.file:
        log_path = Path(logging_settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        ))
    return handlers


def setup_logging(logging_settings: Optional[LoggingSettings] = None) -> None:
    """Configure the root logger from settings, replacing earlier handlers."""
    logging_settings = logging_settings or settings.logging

    root_logger = logging.getLogger()
    root_logger.setLevel(logging_settings.level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(logging_settings.format)
    for handler in _build_handlers(logging_settings):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured at %s", logging_settings.level)
