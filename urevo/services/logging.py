"""
urevo/services/logging.py

Centralised logging for the scale companion.
Falls back to /tmp and finally to console-only output when the home
directory is not writable.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

try:
    LOG_DIR = Path.home() / ".urevo" / "logs"
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    LOG_FILE = LOG_DIR / "urevo.log"
except PermissionError:
    LOG_DIR = Path("/tmp") / "urevo_logs"
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    LOG_FILE = LOG_DIR / "urevo.log"
    print(f"Warning: using temporary log directory: {LOG_DIR}", file=sys.stderr)
except Exception as e:
    LOG_DIR = None
    LOG_FILE = None
    print(f"Warning: cannot create log directory: {e}", file=sys.stderr)


def setup_logging(level=logging.INFO):
    """
    Configure the ``urevo`` logger with a rotating file and stderr.
    - Default level: INFO
    - Max file size: 1 MB
    - 3 rotated files kept
    """
    logger = logging.getLogger("urevo")
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if LOG_FILE:
        try:
            file_handler = RotatingFileHandler(
                LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except (PermissionError, OSError) as e:
            print(f"Warning: cannot write log file: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.info("Logging initialised")
    return logger
