# src/utils/logger.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional
from src.core.config import settings

AUDIT_LOGGER_NAME = f"{settings.APP_NAME}.audit"

def _rotating_file_handler(filename: str, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    handler.setFormatter(formatter)
    return handler

def setup_logging(level_name: Optional[str] = None):
    """
    Configures logging for the application.
    Logs to console and optionally to a rotating file.
    Audit entries go to a child logger that can be routed to its own file.
    """
    log_level_name = (level_name or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    logger = logging.getLogger(settings.APP_NAME)
    logger.setLevel(log_level)

    # Prevent duplicate handlers if called multiple times
    if logger.hasHandlers():
        logger.handlers.clear()

    log_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(process)d - %(threadName)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_formatter)
    logger.addHandler(console_handler)

    if settings.LOG_FILENAME:
        try:
            logger.addHandler(_rotating_file_handler(settings.LOG_FILENAME, log_formatter))
            logger.info(f"Logging to file: {settings.LOG_FILENAME}")
        except OSError as e:
            logger.error(f"Failed to configure file logger for {settings.LOG_FILENAME}: {e}", exc_info=True)

    # Audit lines are already JSON; keep them bare when written to their own file.
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    audit_logger.handlers.clear()
    audit_logger.propagate = True
    if settings.AUDIT_LOG_FILENAME:
        try:
            audit_logger.addHandler(_rotating_file_handler(settings.AUDIT_LOG_FILENAME, logging.Formatter("%(message)s")))
            audit_logger.propagate = False
            logger.info(f"Audit log written to file: {settings.AUDIT_LOG_FILENAME}")
        except OSError as e:
            logger.error(f"Failed to configure audit file logger for {settings.AUDIT_LOG_FILENAME}: {e}", exc_info=True)

    # Quieting overly verbose libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.info(f"Logging setup complete. Application log level set to: {log_level_name}")

# To get a logger instance elsewhere:
# import logging
# from src.core.config import settings
# logger = logging.getLogger(settings.APP_NAME)
