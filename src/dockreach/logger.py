"""Structured logging singleton.

Intentionally reads os.environ directly; the logger must initialize before
pydantic Settings to avoid circular imports and ensure early logging.
Logs always go to stderr, since the CLI prints its results on stdout.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_TRUTHY = {"1", "true", "yes", "on"}


def _renderers(json_output: bool) -> list[structlog.typing.Processor]:
    if json_output:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("DOCKREACH_LOG_LEVEL") or os.environ.get("LOG_LEVEL", "INFO")
    level = getattr(logging, level_name.upper(), logging.INFO)
    json_output = os.environ.get("DOCKREACH_LOG_JSON", "").lower() in _TRUTHY

    # Configure stdlib root logger first so structlog's filter_by_level works
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            *_renderers(json_output),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("dockreach")


logger = _setup_logging()


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


def install_excepthook() -> None:
    """Route uncaught exceptions through structlog (CLI entry point only)."""
    sys.excepthook = _uncaught_exception_handler
