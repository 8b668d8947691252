"""Logging setup and per-tenant agent logs."""

import logging
import sys

import structlog

from .agent_log import AgentLogWriter, build_agent_log_writer


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog for command-line use.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line instead of console output
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


__all__ = ["AgentLogWriter", "build_agent_log_writer", "configure_logging"]
