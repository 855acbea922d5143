"""Operator console: reads commands from stdin.

The only command is ``test``: fetch the latest email and publish it,
for manual verification.  Anything else is ignored.
"""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from .monitor import EmailMonitor

logger = structlog.get_logger()

TEST_COMMAND = "test"


class OperatorConsole:
    """Line-oriented command loop bound to an :class:`EmailMonitor`."""

    def __init__(self, monitor: EmailMonitor) -> None:
        self._monitor = monitor
        self._transport: asyncio.ReadTransport | None = None

    def handle_line(self, line: str) -> bool:
        """Run the command in *line*.  Returns *True* if it was recognized."""
        command = line.strip().lower()
        if command != TEST_COMMAND:
            return False

        logger.info("console_test_requested")
        result = self._monitor.trigger_on_demand_fetch()
        logger.info("console_test_result", result=result.value)
        return True

    async def run(self, reader: asyncio.StreamReader | None = None) -> None:
        """Process lines until EOF or :meth:`close`.

        Without *reader*, stdin is attached to the event loop as a pipe.
        """
        if reader is None:
            reader = await self._open_stdin()

        logger.info("console_ready", hint=f'type "{TEST_COMMAND}" to process the latest email')
        while True:
            raw = await reader.readline()
            if not raw:
                logger.info("console_eof")
                break
            self.handle_line(raw.decode(errors="replace"))

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        self._transport, _ = await loop.connect_read_pipe(lambda: protocol, sys.stdin)
        return reader

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
