"""Logging configuration for talos-bootstrap.

Structured events go to stderr, or to ``--log-file`` so they stay out of the
operator's progress output. ``--json-logs`` switches to one JSON object per
line for CI runs.
"""

import logging
import sys
from pathlib import Path

import structlog


def configure_logging(
    level: str = "info",
    log_file: str | Path | None = None,
    json_output: bool = False,
) -> None:
    """Route pipeline events to stderr or a log file.

    Args:
        level: Log level (debug, info, warning, error)
        log_file: Write events here instead of stderr
        json_output: Render events as JSON lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_file:
        handler: logging.Handler = logging.FileHandler(str(log_file))
        colors = False
    else:
        handler = logging.StreamHandler(sys.stderr)
        colors = sys.stderr.isatty()
    handler.setLevel(log_level)

    logging.basicConfig(level=log_level, handlers=[handler], format="%(message)s", force=True)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))

    # Not cached: each CLI invocation in a process may pick a different renderer
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for a module."""
    return structlog.get_logger(name)
