"""Logging configuration."""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None, path: Optional[str] = None) -> None:
    # stdout carries the editor channel, so diagnostics go to stderr
    level = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if path:
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


__all__ = ["configure_logging", "LOG_FORMAT"]
