# historia/utils/logging.py

import logging
import os
from pathlib import Path
from typing import Optional

from historia.config.settings import BASE_DIR

DEFAULT_LOG_DIR = BASE_DIR / "historia" / "logs"
LOG_FILE_NAME = "historia.log"


def _resolve_log_file() -> Optional[Path]:
    """
    HISTORIA_LOG_DIR overrides the log directory; setting it to "-"
    turns the file handler off (console only).
    """
    raw = os.getenv("HISTORIA_LOG_DIR", "").strip()
    if raw == "-":
        return None
    log_dir = Path(raw) if raw else DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    return log_dir / LOG_FILE_NAME


def get_logger(name: str = "historia") -> logging.Logger:
    """
    Return a logger that logs both to file and console.
    Avoids adding duplicate handlers on repeated imports.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid duplicate handlers

    logger.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler
    log_file = _resolve_log_file()
    if log_file is not None:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.INFO)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    # Console handler (optional but handy while developing)
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger
