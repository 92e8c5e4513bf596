import logging
import sys
from typing import Optional

LOGGER_NAME = "meeg_BEM"


def setup_logging(level: int = logging.INFO,
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach handlers to the logger of the 'meeg_BEM' namespace.

    The assembly modules log through ``logging.getLogger(__name__)`` and
    stay silent until this is called (or the application configures
    logging itself).

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO).
        log_file: Optional path of a log file, overwritten on each call.

    Returns:
        logging.Logger: The package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # avoid duplicated lines when called twice
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w',
                                           encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug("Logging initialized.")
    return logger
