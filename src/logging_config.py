"""
Centralized logging configuration for the auditor.
"""
import logging
import sys
import os
from pythonjsonlogger import json

from src.config import settings


class InfoFilter(logging.Filter):
    """
    Only lets records BELOW the ERROR level through (DEBUG, INFO, WARNING).
    """

    def filter(self, record):
        return record.levelno < logging.ERROR


def setup_logging(log_dir: str = "logs"):
    """
    Configures the root logger: JSON lines on stdout for log shipping and
    plain text files under `log_dir` for local debugging.
    """
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        # Logging to files is optional; console logging still works.
        print(f"Warning: Could not create log directory {log_dir}: {e}")

    text_formatter = logging.Formatter(
        "%(asctime)s - [%(levelname)s] - %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    json_formatter = json.JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(module)s %(funcName)s %(lineno)d %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers = []  # Clear existing handlers if called multiple times

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(json_formatter)
    logger.addHandler(console_handler)

    app_log_path = os.path.join(log_dir, "app.log")
    try:
        app_log_handler = logging.FileHandler(app_log_path)
        app_log_handler.setLevel(level)
        app_log_handler.addFilter(InfoFilter())
        app_log_handler.setFormatter(text_formatter)
        logger.addHandler(app_log_handler)
    except OSError:
        print(
            f"Warning: Could not open log file {app_log_path}. Skipping file logging."
        )

    try:
        error_log_path = os.path.join(log_dir, "error.log")
        error_log_handler = logging.FileHandler(error_log_path)
        error_log_handler.setLevel(logging.ERROR)
        error_log_handler.setFormatter(text_formatter)
        logger.addHandler(error_log_handler)
    except OSError:
        pass

    # Suppress verbose external module logs
    for noisy in ("boto3", "botocore", "httpx", "httpcore", "azure"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    # Uvicorn would otherwise duplicate console output
    logging.getLogger("uvicorn").handlers = []
    logging.getLogger("uvicorn.access").handlers = []

    logger.info(
        "Logging configured. JSON output to console, text output to %s directory.",
        log_dir,
    )
