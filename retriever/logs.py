"""
logs.py — Logger class with a TRACE level and the console formatter.

Console lines read ``<elapsed> <LEVEL> <logger>: <message>``; colour is
used only when stderr is a terminal.

Library modules only fetch loggers; handlers are attached by the driver
through :func:`setup_logging`.
"""

from __future__ import annotations

import logging
import os
from typing import Any, TextIO

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


_RESET = "\033[0m"
_LEVEL_COLORS = {
    TRACE: "\033[0;37m",
    logging.DEBUG: _RESET,
    logging.INFO: "\033[34m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[1;31m",
    logging.CRITICAL: "\033[1;37;41m",
}

CONSOLE_FORMAT = "%(elapsed)s %(levelname)-8s %(name)s: %(message)s"


class ColoredFormatter(logging.Formatter):
    """Adds ``elapsed`` seconds since start-up and tints level and message.

    Formats a copy, so other handlers on the hierarchy see the record as
    it was logged.
    """

    def __init__(self, fmt: str | None = None, datefmt: str | None = None, use_color: bool = True) -> None:
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        if self.use_color:
            c = _LEVEL_COLORS.get(record.levelno, _RESET)
            record.msg = f"{c}{record.getMessage()}{_RESET}"
            record.args = None
            record.levelname = f"{c}{record.levelname:<8}{_RESET}"
        return super().format(record)


def get_logger(name: str) -> CustomLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


_handler: logging.StreamHandler[TextIO] | None = None


def setup_logging(debug: bool = False) -> CustomLogger:
    """Attach the console handler to the package logger.

    ``debug`` lowers the level to ``DEBUG``; ``RETRIEVER_TRACE=1`` in the
    environment lowers it further to ``TRACE``.  Calling this more than
    once only adjusts the level.
    """
    global _handler

    level = logging.DEBUG if debug else logging.INFO
    if os.getenv("RETRIEVER_TRACE", "").strip().lower() in {"1", "true", "yes", "on"}:
        level = TRACE

    root = get_logger("retriever")
    root.setLevel(level)
    if _handler is None:
        _handler = logging.StreamHandler()
        _handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, use_color=_handler.stream.isatty()))
        root.addHandler(_handler)
    _handler.setLevel(level)
    return root
