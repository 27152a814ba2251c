import logging
import logging.handlers
import os

from .config import LOG_DIR

LOG_MAX_BYTES = 3 * 1024 * 1024


def _rotating_logger(name, filename, fmt, log_dir):
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False  # Keep gift traffic out of the root logger

    if not logger.hasHandlers():
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, filename), maxBytes=LOG_MAX_BYTES, backupCount=1, encoding='utf-8'
        )
        handler.setFormatter(logging.Formatter(fmt))
        logger.addHandler(handler)
    return logger


def get_gift_ops_logger(log_dir=LOG_DIR):
    """Operational log (log/gift_ops.txt)."""
    return _rotating_logger('gift_ops', 'gift_ops.txt', '%(asctime)s - %(name)s - %(levelname)s - %(message)s', log_dir)


def get_giftlog_logger(log_dir=LOG_DIR):
    """Raw API request/response trail (log/giftlog.txt)."""
    return _rotating_logger('giftlog', 'giftlog.txt', '%(asctime)s - %(message)s', log_dir)
