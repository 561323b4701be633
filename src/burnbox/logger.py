"""Structured logging for provisioning runs and the operations CLI.

Configured twice. At import, from ``LOG_LEVEL``, so a malformed
burnbox.toml is still reported through the logger. Then again by the CLI
from the ``[logging]`` section once settings have loaded.

Output goes to stderr. Image builds capture it without a TTY, so there the
default is one ``key=value`` line per event, which survives ``docker build``
log scraping; ``format = "json"`` gives one JSON object per line instead.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

import structlog

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FORMATS = ("auto", "console", "logfmt", "json")


def resolve_format(fmt: str, stream: TextIO) -> str:
    if fmt == "auto":
        return "console" if stream.isatty() else "logfmt"
    return fmt


def _renderer(fmt: str, stream: TextIO) -> structlog.types.Processor:
    match fmt:
        case "json":
            return structlog.processors.JSONRenderer()
        case "logfmt":
            return structlog.processors.LogfmtRenderer(
                key_order=["timestamp", "level", "event"], drop_missing=True
            )
        case "console":
            return structlog.dev.ConsoleRenderer(colors=stream.isatty())
    raise ValueError(f"Unknown log format {fmt!r} (expected one of {', '.join(FORMATS)})")


def configure_logging(level: str | None = None, fmt: str = "auto") -> None:
    """(Re)configure structlog and the stdlib root logger.

    ``level`` falls back to ``LOG_LEVEL``, then INFO.
    """
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    numeric = getattr(logging, name, logging.INFO) if name in LEVELS else logging.INFO

    fmt = resolve_format(fmt, sys.stderr)
    renderer = _renderer(fmt, sys.stderr)

    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    logging.getLogger().setLevel(numeric)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            # Plain renderers need the traceback as text; console pretty-prints it
            *([] if fmt == "console" else [structlog.processors.format_exc_info]),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfigured after settings load; cached loggers would miss it
        cache_logger_on_first_use=False,
    )


configure_logging()
logger: structlog.stdlib.BoundLogger = structlog.get_logger()


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


sys.excepthook = _uncaught_exception_handler
