# log_setup.py
"""Logging configuration shared by the service and the CLI.

Call configure() once at startup. Modules log through
logging.getLogger(__name__).

  console           - LOG_LEVEL, compact single-line format
  logs/automation.log - DEBUG, rotating (5 x 5 MB)
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOGS_DIR = Path(__file__).parent / "logs"
LOG_FILE = LOGS_DIR / "automation.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s: %(message)s"
_FILE_FMT = "%(asctime)s  %(levelname)-7s  %(name)-14s  %(filename)s:%(lineno)d  %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"


def configure(level: Optional[str] = None, log_file: Optional[Path] = LOG_FILE) -> None:
    """Install console + rotating file handlers. Safe to call multiple times."""
    root = logging.getLogger()
    if root.handlers:
        return  # Already configured

    if level is None:
        from settings import settings
        level = settings.log_level

    root.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(ch)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
        root.addHandler(fh)

    for noisy in ("httpx", "httpcore", "botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
