"""
Logging setup for the replay client.
"""

import logging
from typing import Optional

VERBOSITY_LEVELS = {
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'info': logging.INFO,
    'diag': logging.DEBUG,
}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configure_logging(verbosity: str = 'info', stream=None) -> Optional[logging.Logger]:
    """
    Configure the ``proxyreplay`` logger hierarchy.

    Args:
        verbosity: One of 'error', 'warn', 'info', 'diag'
        stream: Optional stream for the handler (stderr by default)

    Returns:
        The package logger, or None if the verbosity is not recognized
    """
    level = VERBOSITY_LEVELS.get(verbosity.lower())
    if level is None:
        return None

    logger = logging.getLogger('proxyreplay')
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    for handler in logger.handlers:
        handler.setLevel(level)

    return logger
