"""Signal handling for the relay process.

SIGINT and SIGTERM both run the relay's shutdown callback on the event
loop.  The handlers are removed once shutdown has finished so that a
further Ctrl-C falls back to the default behaviour.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_signal_handlers(on_shutdown: Callable[[], None]) -> None:
    """Call *on_shutdown* on the first SIGINT/SIGTERM.

    A repeated signal while shutdown is already under way is logged
    and otherwise ignored.
    """
    loop = asyncio.get_running_loop()
    received: list[signal.Signals] = []

    def _handle(sig: signal.Signals) -> None:
        if received:
            logger.info("shutdown_already_in_progress", signal=sig.name)
            return
        received.append(sig)
        logger.info("shutdown_signal_received", signal=sig.name)
        on_shutdown()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)


def remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
