"""Logging setup for the web process."""

from __future__ import annotations

import logging
import os


def setup_logging(level: int | str | None = None) -> None:
    """Configure the root logger once for the server process."""

    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    logging.basicConfig(level=level, format=fmt, handlers=[logging.StreamHandler()])
    # Silence noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
