"""Structured logging setup using structlog.

Log lines go to stderr so that the operator console keeps stdin and
stdout to itself.  The renderer follows how the relay is run: a person
typing ``test`` at a terminal gets coloured console output, anything
detached (containers, systemd) gets JSON lines.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

SERVICE_NAME = "mail-relay"

# Loggers that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_SECRET_KEYS = frozenset({"password", "token", "bot_token", "authorization"})
_REDACTED = "***"


def _add_service(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = _REDACTED
    return event_dict


def use_json_output(*, interactive: bool) -> bool:
    """JSON unless the operator console is attached to a terminal."""
    return not (interactive and sys.stderr.isatty())


def setup_logging(
    *,
    json: bool | None = None,
    level: str = "INFO",
    interactive: bool = False,
) -> None:
    """Configure structlog for the relay process.

    Parameters
    ----------
    json:
        *True* for JSON lines, *False* for the console renderer, *None*
        to decide with :func:`use_json_output`.
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).
    interactive:
        Whether the operator console reads stdin.
    """
    if json is None:
        json = use_json_output(interactive=interactive)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service,
        _redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
