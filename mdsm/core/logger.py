from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

# uvicorn reports listener startup failures (bad TLS material, port in use) here
LISTENER_LOGGERS = ("uvicorn.error",)


def _file_handler(logger: logging.Logger, path: str) -> RotatingFileHandler:
    for h in logger.handlers:
        if isinstance(h, RotatingFileHandler) and h.baseFilename == os.path.abspath(path):
            return h
    h = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    h.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    logger.addHandler(h)
    return h


def setup_logging(log_dir: str = "logs", *, level: str = "INFO", console: bool = True) -> logging.Logger:
    """
    Configure the "mdsm" logger: rotating mdsm.log under `log_dir`, plus the
    console when `console` is set. The uvicorn listener's error log is written
    to the same file. Safe to call more than once.
    """
    os.makedirs(log_dir, exist_ok=True)
    text_path = os.path.join(log_dir, "mdsm.log")

    logger = logging.getLogger("mdsm")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logger.propagate = False
    _file_handler(logger, text_path)

    if console and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(sh)

    for name in LISTENER_LOGGERS:
        _file_handler(logging.getLogger(name), text_path)

    return logger
