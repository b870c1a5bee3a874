import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "faceblur_worker"


def setup_logging(log_level: str = "INFO", log_dir: Optional[str] = "/app/data/worker") -> logging.Logger:
    """Setup rotating file logger to <log_dir>/log.log plus console output"""

    # Create logger
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s'
    )

    log_file = None
    if log_dir:
        # Ensure log directory exists
        Path(log_dir).mkdir(parents=True, exist_ok=True)

        # Create rotating file handler
        log_file = Path(log_dir) / "log.log"
        handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # Also add console handler for development
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.info(f"Logging initialized. Log file: {log_file or 'console only'}")
    return logger


def log_exception(logger: logging.Logger, message: str) -> None:
    """Log an error together with the active exception's traceback"""
    logger.error(message, exc_info=True)
