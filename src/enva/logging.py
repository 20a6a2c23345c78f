"""Logging configuration."""
import datetime
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog
from structlog.types import EventDict, Processor

IGNORED_LOGGERS = [
    "mcp.server.session",
    "mcp.server.stdio",
    "aiohttp",
    "asyncio",
]


def add_timestamp(_, __, event_dict: EventDict) -> EventDict:
    """Add ISO timestamp to the event dict."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return event_dict


def drop_ignored(logger: Any, name: str, event_dict: EventDict) -> EventDict:
    """Drop events from noisy third-party loggers."""
    logger_name = getattr(logger, "name", "") or ""
    if any(logger_name.startswith(ignored) for ignored in IGNORED_LOGGERS):
        raise structlog.DropEvent
    return event_dict


class CompactJSONRenderer:
    """Single-line JSON renderer with minimal output."""

    def __call__(self, _: Any, __: str, event_dict: EventDict) -> str:
        items = {
            "ts": event_dict.pop("timestamp", None),
            "lvl": event_dict.pop("level", "???"),
            "msg": event_dict.pop("event", ""),
        }
        if logger_name := event_dict.pop("logger", None):
            items["logger"] = logger_name
        if event_dict:
            items["data"] = event_dict
        return json.dumps(items, separators=(",", ":"), default=str)


def level_for(verbose: bool = False, quiet: bool = False) -> str:
    """Map CLI verbosity toggles to a level name."""
    if quiet:
        return "ERROR"
    if verbose:
        return "DEBUG"
    return "INFO"


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None,
) -> None:
    """Configure structured logging for the application.

    All log output goes to STDERR so STDOUT stays free for command results:
    - compact JSON when ``json_output`` is set or STDERR is not a terminal
    - structlog's console renderer otherwise
    An optional ``log_file`` receives the same events as JSON.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level),
        handlers=handlers,
        force=True,
    )

    renderer: Processor
    if json_output or log_file is not None or not sys.stderr.isatty():
        renderer = CompactJSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    processors: List[Processor] = [
        structlog.stdlib.filter_by_level,
        drop_ignored,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_timestamp,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
