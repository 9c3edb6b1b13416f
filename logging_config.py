"""
Logging configuration for the command-line tools.

The library modules only create module-level loggers; handlers are attached
here, on the root logger, because the modules are installed flat.
"""

import logging
import sys

LOG_FORMAT  = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%H:%M:%S'


def setup_logging(level=logging.INFO, log_file=None):
    """
    Configure the root logger.

    Parameters
    ----------
    level    : logging level (e.g. logging.DEBUG, logging.INFO)
    log_file : optional path; messages are also written there (overwritten)
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    # avoid duplicate output when called twice
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug('Logging initialized')
    return logger
