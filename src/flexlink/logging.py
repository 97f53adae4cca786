"""Structlog-based logging for flexlink.

Library code logs dotted event names with key-value fields and never prints.
Events go to stderr so the CLI's tables on stdout stay machine-readable.
"""
from __future__ import annotations

import sys
from typing import Literal

import logging
import structlog

from flexlink.config import CONFIG

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def configure_logging(level: LogLevel = "INFO", json: bool = True) -> None:
    """Route flexlink events at ``level`` and above to stderr.

    ``json=False`` renders key-value lines for interactive use.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    logging.getLogger("flexlink").setLevel(getattr(logging, level))
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = "flexlink"):
    return structlog.get_logger(name if name.startswith("flexlink") else f"flexlink.{name}")


# Initialize default config
configure_logging(CONFIG.log_level if CONFIG.log_level in LogLevel.__args__ else "INFO")
