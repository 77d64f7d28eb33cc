"""
relay_log.py — logger class and console formatting shared by every module.

Importing this module installs :class:`CustomLogger` as the logger class,
so ``logging.getLogger(__name__)`` in the other modules returns a logger
with a ``trace()`` method.  Handlers are only attached by
:func:`setup_logging`, which the entry point calls once.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colors = {
            TRACE: "\033[0;37m",
            logging.DEBUG: "\033[0m",
            logging.INFO: "\033[34m",
            logging.WARNING: "\033[1;33m",
            logging.ERROR: "\033[1;31m",
            logging.CRITICAL: "\033[1;37;41m",
        }
        c = colors.get(record.levelno, "\033[0m")
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}\033[0m"
        record.levelname = f"{c}{record.levelname:<8}\033[0m"
        return super().format(record)


LOG_FORMAT = "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"


def parse_level(name: str) -> int:
    """Map a level name (``"trace"``, ``"debug"``, ...) to its number."""
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def setup_logging(level: int = logging.INFO, stream: TextIO = sys.stderr) -> None:
    """Attach the coloured console handler to the root logger.

    Logs go to stderr: stdout carries the ``listen`` announcement line
    that the controller parses.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        if getattr(h, "_relay_handler", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    handler._relay_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
