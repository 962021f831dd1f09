import logging
import os

from ..constants import APP_LOGGER, LOG_LEVEL_ENV

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name=APP_LOGGER, level=None):
    """
    Logger with a single stream handler, configured on first use.

    The level is `level` when given, else RECORD_TRACK_LOG_LEVEL, else INFO.
    Module loggers (logging.getLogger(__name__)) sit under "record_track"
    and propagate to the handler installed here.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(level or os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)
    return logger
