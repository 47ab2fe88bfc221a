from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_installed: list[logging.Handler] = []


def setup_logging(level: str, log_file: str) -> None:
    """Route logs to stderr (stdout carries CLI output) and optionally a rotating file.

    Calling it again replaces the handlers installed by the previous call.
    """
    root = logging.getLogger()
    root.setLevel((level or "INFO").upper())

    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    _installed.append(console)

    if log_file:
        rotating = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
        rotating.setFormatter(formatter)
        _installed.append(rotating)

    for handler in _installed:
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
