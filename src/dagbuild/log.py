from __future__ import annotations

import logging
import sys

import structlog


def _stderr_logger(*args):
    # looked up per logger so a swapped sys.stderr is honoured
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(debug: bool = False) -> None:
    """Route structlog events to stderr; stdout stays for the run report."""
    level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
