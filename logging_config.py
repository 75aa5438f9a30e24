import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "passphrase_rooms"

_configured = False


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure the project logger once. Later calls only adjust the level."""
    global _configured
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger.setLevel(level)

    if _configured:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Keep uvicorn's own access log out of ours
    logger.propagate = False
    _configured = True
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def short_address(room_address: str) -> str:
    """Room addresses are logged truncated."""
    return f"{room_address[:12]}..." if room_address else "<none>"
