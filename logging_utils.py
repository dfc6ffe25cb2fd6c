from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional, Sequence

DEFAULT_LOG_FILE = os.path.join("logs", "monitor.log")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

# selenium, urllib3 and pdfminer log every wire call and layout step at DEBUG/INFO.
NOISY_LOGGERS: Sequence[str] = ("selenium", "urllib3", "pdfminer", "undetected_chromedriver")


def setup_logging(
    *,
    level: str = "INFO",
    log_file: Optional[str] = DEFAULT_LOG_FILE,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
    quiet_loggers: Sequence[str] = NOISY_LOGGERS,
) -> None:
    root = logging.getLogger()

    # Avoid duplicate handlers when setup runs again (tests, --once reruns).
    for h in list(root.handlers):
        root.removeHandler(h)

    root.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)
