"""
Logging for the StudyMate package.

All module loggers hang below the ``studymate`` logger, which owns the
handler; the application never touches the root logger.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOGGER_NAME = 'studymate'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# AWS SDK loggers dump request bodies below WARNING
QUIET_LOGGERS = ('boto3', 'botocore', 'urllib3')


def setup_logging(config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Attach the stdout handler to the package logger and apply the configured level.

    Calling it again only updates the level.

    Args:
        config: AppConfig instance, uses default if None

    Returns:
        The package logger
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel(getattr(logging, config.log_level.upper()))
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """
    Logger for a module, placed under the package logger.

    Args:
        name: Logger name (usually __name__)
    """
    if name != LOGGER_NAME and not name.startswith(LOGGER_NAME + '.'):
        name = f'{LOGGER_NAME}.{name}'
    return logging.getLogger(name)
