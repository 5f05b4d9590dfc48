"""Logging setup shared by the CLI and long-running processes."""

from __future__ import annotations

import logging
from contextvars import ContextVar

from rich.console import Console
from rich.logging import RichHandler

# Run being driven by the current asyncio task, if any
run_id_ctx: ContextVar[str | None] = ContextVar("run_id", default=None)

_PACKAGE_LOGGER = "beads_console"


class RunIDFilter(logging.Filter):
    """Injects the current run id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = run_id_ctx.get() or "-"
        return True


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a rich handler to the package logger.

    Safe to call more than once; the handler is replaced rather than stacked.
    """
    logger = logging.getLogger(_PACKAGE_LOGGER)
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    # stdout is reserved for command output and the MCP stream
    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("[%(run_id)s] %(name)s: %(message)s"))
    handler.addFilter(RunIDFilter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
