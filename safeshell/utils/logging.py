"""
Logging configuration for SafeShell.

Structured logging through structlog, rendered to stderr so that command
output on stdout stays clean. SAFESHELL_DEBUG turns on debug events.
"""

from __future__ import annotations

import logging
import sys

import structlog

from .env import is_debug_mode


_configured = False


def setup_logging(level: str | None = None, json_output: bool = False) -> None:
    """
    Configure structlog on top of the stdlib logging module.

    Args:
        level: Logging level name; defaults to DEBUG when SAFESHELL_DEBUG
            is set and WARNING otherwise
        json_output: Render events as JSON lines instead of console text
    """
    global _configured

    if level is None:
        level = "DEBUG" if is_debug_mode() else "WARNING"

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger("safeshell")
    root_logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.propagate = False

    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance by name, configuring logging on first use."""
    if not _configured:
        setup_logging()
    return structlog.get_logger(name)
