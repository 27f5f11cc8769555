# fhir_server/logging_setup.py

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .config import LOG_FILE, LOG_LEVEL

DEFAULT_FMT = "%(asctime)s - %(levelname)-5s - %(name)s - %(message)s"
DATE_FMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = LOG_LEVEL, file_name: Optional[str] = LOG_FILE) -> None:
    """
    Configure the root logger once: console always, rotating file when a path is given.
    """
    if getattr(setup_logging, "_configured", False):
        return  # prevent double-config

    root = logging.getLogger()
    root.setLevel(level.upper())

    # Console
    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter(DEFAULT_FMT, datefmt=DATE_FMT))
    root.addHandler(ch)

    # Rotating file
    if file_name:
        path = Path(file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=3, encoding="utf-8"
        )
        fh.setFormatter(logging.Formatter(DEFAULT_FMT, datefmt=DATE_FMT))
        root.addHandler(fh)

    setup_logging._configured = True
