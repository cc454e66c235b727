# logger.py - Log files for the BizPoints service: one rotating file per concern under LOG_DIR
import os
import logging
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"
CONSOLE_FORMAT = "%(name)s - %(levelname)s - %(message)s"


def _level_from_env():
    return os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logger(name, log_file=None, level=None):
    """
    Logger `bizpoints.<name>` writing to LOG_DIR/<name>.log.
    Commission and voucher logs are audit material, so they are kept apart from app.log.
    """
    log_dir = os.environ.get("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_file = log_file or os.path.join(log_dir, f"{name}.log")
    level = level or _level_from_env()

    logger = logging.getLogger(f"bizpoints.{name}")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False

    file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=10, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    if os.environ.get("FLASK_ENV") != "production":
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console_handler)

    return logger


app_logger = setup_logger("app")
payments_logger = setup_logger("payments")
commission_logger = setup_logger("commission")
voucher_logger = setup_logger("vouchers")
