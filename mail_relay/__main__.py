"""Entry point for the relay.

Usage::

    python -m mail_relay

Configuration comes from environment variables (or a ``.env`` file);
see :mod:`mail_relay.config`.
"""

from __future__ import annotations

import asyncio
import sys

import httpx
import structlog
from pydantic import ValidationError

from .config import RelayConfig
from .logging import setup_logging

logger = structlog.get_logger()


def main() -> None:
    try:
        config = RelayConfig()
    except ValidationError as exc:
        setup_logging(json=False)
        logger.error(
            "configuration_invalid",
            missing=[".".join(str(p) for p in err["loc"]) for err in exc.errors()],
            error=str(exc),
        )
        sys.exit(1)

    setup_logging(
        json=config.log_json,
        level=config.log_level,
        interactive=config.console_enabled,
    )

    from .app import RelayApp

    app = RelayApp(config)
    try:
        asyncio.run(app.run())
    except httpx.HTTPError:
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
