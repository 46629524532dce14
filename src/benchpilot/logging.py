"""Logging setup for benchpilot.

Everything logs through the ``benchpilot`` logger.  The console handler
writes to stderr so that stdout carries only command output (the
``invoke`` command answers in JSON on stdout).  An optional file handler
records DEBUG, tagged with the thread name so worker-context records can
be told apart from the event loop's.

asyncio's own logger reports exceptions nobody retrieved from a task;
those go to the same handlers at WARNING and above.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

_LOGGER_NAME = "benchpilot"
_CONSOLE_FORMAT = "%(levelname)-8s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"

_FOREIGN_LOGGERS = ("asyncio",)

# Set on every handler installed here, so reset_logging leaves others alone.
_MARK = "_benchpilot_handler"


def _console_level(verbose: bool, quiet: bool) -> int:
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.INFO


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _MARK, True)
    return handler


def reset_logging() -> None:
    """Detach and close every handler ``setup_logging`` installed."""
    for name in (_LOGGER_NAME, *_FOREIGN_LOGGERS):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            if getattr(handler, _MARK, False):
                logger.removeHandler(handler)
                handler.close()


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure and return the benchpilot logger.

    Safe to call more than once; earlier handlers are replaced.

    Args:
        verbose: Show DEBUG records on the console.
        quiet: Only show WARNING and above.  Ignored if *verbose* is set.
        log_file: Also write every record to this file.

    Returns:
        The ``benchpilot`` logger.
    """
    reset_logging()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(_console_level(verbose, quiet))
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    handlers = [_mark(console)]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT))
        handlers.append(_mark(fh))

    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in handlers:
        logger.addHandler(handler)

    for name in _FOREIGN_LOGGERS:
        foreign = logging.getLogger(name)
        if foreign.level == logging.NOTSET or foreign.level > logging.WARNING:
            foreign.setLevel(logging.WARNING)
        for handler in handlers:
            foreign.addHandler(handler)

    return logger
