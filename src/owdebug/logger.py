"""Structured logging for the debugger.

Log lines go to stderr so stdout stays free for the action's own output.
The level is read from ``OWDEBUG_LOGGING__LEVEL`` (or ``LOG_LEVEL``) at
import, before Settings are loaded, and reapplied from ``[logging]`` once
they are.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    # looked up per call so a redirected or captured stderr is honoured
    return structlog.PrintLogger(sys.stderr)


def _level_number(name: str | None) -> int:
    level = getattr(logging, (name or "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure(level: str | None = None) -> None:
    """(Re)configure structlog; *level* defaults to the environment's."""
    if level is None:
        level = os.environ.get("OWDEBUG_LOGGING__LEVEL") or os.environ.get("LOG_LEVEL")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=_stderr_logger,
        # the level can change after startup, so bound loggers are not cached
        cache_logger_on_first_use=False,
    )


def set_level(level_name: str) -> None:
    """Apply the ``[logging]`` level from Settings; unknown names mean INFO."""
    configure(level_name)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("owdebug crashed", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


def install_excepthook() -> None:
    """Route uncaught exceptions through the logger (CLI only)."""
    sys.excepthook = _uncaught_exception_handler


configure()
logger = structlog.get_logger("owdebug")
