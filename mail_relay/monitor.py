"""EmailMonitor: owns the IMAP connection and drives the poll cycle.

One cycle is ``connect → open inbox → search → fetch → close``.  Poll
cycles scan ``UNSEEN`` messages and mark them seen; on-demand cycles
fetch the most recent message of the mailbox and leave it unseen.

At most one connection session exists at a time: the session slot is
claimed synchronously before the cycle task starts and released only
after the transport is closed, so a second cycle cannot begin while
one is in flight.  The next poll cycle is armed on a timer owned by
the instance once the previous one has fully torn down.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import ImapConfig
from .imap_client import ALL, UNSEEN, AsyncImapClient, FetchedEmail
from .models import MonitorState, OnDemandResult, PollMode, StructuredMessage
from .parser import MimeParser

logger = structlog.get_logger()

MessageHandler = Callable[[StructuredMessage], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]
ClientFactory = Callable[[ImapConfig], AsyncImapClient]


class _SessionClosed(Exception):
    """The session was discarded by ``stop()`` while an operation was pending."""


@dataclass(eq=False)
class _Session:
    mode: PollMode
    client: AsyncImapClient
    state: MonitorState = MonitorState.CONNECTING


class EmailMonitor:
    """Poll an IMAP mailbox and hand new messages to async handlers.

    ``start()``, ``stop()`` and ``trigger_on_demand_fetch()`` are plain
    methods that must be called from the running event loop; the I/O
    happens in background tasks.  Handlers are dispatched as tracked
    tasks so that rendering/publishing never holds the connection and
    is not cancelled by ``stop()``.  Use :meth:`drain` to wait for them.
    """

    def __init__(
        self,
        config: ImapConfig,
        *,
        on_new_email: MessageHandler,
        on_latest_email: MessageHandler | None = None,
        on_error: ErrorHandler | None = None,
        client_factory: ClientFactory = AsyncImapClient,
        parser: MimeParser | None = None,
    ) -> None:
        self._config = config
        self._on_new_email = on_new_email
        self._on_latest_email = on_latest_email or on_new_email
        self._on_error = on_error
        self._client_factory = client_factory
        self._parser = parser or MimeParser()

        self._running = False
        self._session: _Session | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._poll_deferred = False
        self._cycle_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._processed_ids: set[str] = set()

        self._last_poll_time: datetime | None = None
        self._messages_emitted: int = 0

    # ------------------------------------------------------------------
    # Public properties (used by health checks)
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> MonitorState:
        if not self._running:
            return MonitorState.IDLE
        if self._session is not None:
            return self._session.state
        return MonitorState.WAITING

    @property
    def connection_active(self) -> bool:
        return self._session is not None

    @property
    def processed_ids(self) -> frozenset[str]:
        return frozenset(self._processed_ids)

    @property
    def last_poll_time(self) -> datetime | None:
        return self._last_poll_time

    @property
    def messages_emitted(self) -> int:
        return self._messages_emitted

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin polling.  A second call while running only logs a warning."""
        if self._running:
            logger.warning("monitor_already_running")
            return

        self._running = True
        logger.info(
            "monitor_started",
            host=self._config.host,
            mailbox=self._config.mailbox,
            interval_seconds=self._config.check_interval_seconds,
        )
        self._begin_cycle(PollMode.POLL)

    def stop(self) -> None:
        """Stop polling, force-close any open connection and forget processed ids.

        A fetch in progress is not waited for; whatever it returns later
        is discarded.  Handler tasks already dispatched keep running.
        """
        if not self._running:
            return

        logger.info("monitor_stopping")
        self._running = False
        self._poll_deferred = False
        self._cancel_timer()

        session, self._session = self._session, None
        if session is not None:
            session.client.abort()

        self._processed_ids.clear()
        logger.info("monitor_stopped")

    def trigger_on_demand_fetch(self) -> OnDemandResult:
        """Fetch the latest message without marking it seen.

        Rejected (not queued) when the monitor is idle or a connection
        is already active.  Does not touch the poll schedule.
        """
        if not self._running:
            logger.error("monitor_not_running")
            return OnDemandResult.IDLE

        if not self._begin_cycle(PollMode.ON_DEMAND):
            return OnDemandResult.BUSY
        return OnDemandResult.STARTED

    async def drain(self) -> None:
        """Wait until every dispatched handler has finished."""
        while self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _begin_cycle(self, mode: PollMode) -> bool:
        if not self._running:
            return False

        if self._session is not None:
            logger.warning(
                "imap_connection_already_active",
                requested=mode.value,
                active=self._session.mode.value,
            )
            return False

        session = _Session(mode=mode, client=self._client_factory(self._config))
        self._session = session
        self._cycle_task = asyncio.create_task(
            self._run_cycle(session),
            name=f"imap-{mode.value}-cycle",
        )
        return True

    def _arm_timer(self, delay: float, reason: str) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timer, reason)
        logger.debug("poll_timer_armed", reason=reason, delay_seconds=delay)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, reason: str) -> None:
        self._timer = None
        if not self._running:
            return

        if self._session is not None:
            # An on-demand session holds the connection; poll right after it.
            self._poll_deferred = True
            logger.info("poll_deferred", reason=reason)
            return

        logger.debug("poll_timer_fired", reason=reason)
        self._begin_cycle(PollMode.POLL)

    def _resume_deferred_poll(self) -> None:
        if self._poll_deferred and self._running and self._session is None:
            self._poll_deferred = False
            self._begin_cycle(PollMode.POLL)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, session: _Session) -> None:
        client = session.client
        try:
            await client.connect()
            self._ensure_current(session)

            await client.open_inbox()
            self._ensure_current(session)
            session.state = MonitorState.INBOX_OPEN

            if session.mode is PollMode.POLL:
                await self._scan_unseen(session)
            else:
                await self._scan_latest(session)
        except _SessionClosed:
            logger.debug("imap_session_discarded", mode=session.mode.value)
            await client.close()
            return
        except Exception as exc:
            if not self._is_current(session):
                logger.debug(
                    "imap_late_error_ignored",
                    mode=session.mode.value,
                    error=str(exc),
                )
                client.abort()
                return
            await self._fail(session, exc)
            return

        await self._finish(session)

    async def _scan_unseen(self, session: _Session) -> None:
        session.state = MonitorState.SCANNING
        seqnos = await session.client.search(UNSEEN)
        self._ensure_current(session)
        self._last_poll_time = datetime.now(UTC)

        if not seqnos:
            logger.info("no_new_emails")
            return

        logger.info("new_emails_found", count=len(seqnos))
        session.state = MonitorState.FETCHING

        new = 0
        async with aclosing(session.client.fetch(seqnos, mark_seen=True)) as stream:
            async for fetched in stream:
                self._ensure_current(session)
                message = self._parse(fetched)
                if message is None:
                    continue
                if message.message_id in self._processed_ids:
                    logger.debug("email_already_processed", message_id=message.message_id)
                    continue
                self._processed_ids.add(message.message_id)
                self._dispatch(self._on_new_email, message, "new_email")
                new += 1

        logger.info("new_emails_processed", fetched=len(seqnos), emitted=new)

    async def _scan_latest(self, session: _Session) -> None:
        session.state = MonitorState.SCANNING
        seqnos = await session.client.search(ALL)
        self._ensure_current(session)

        if not seqnos:
            logger.info("no_emails_found")
            return

        # Highest sequence number is the most recent in server order.
        latest = max(seqnos)
        logger.info("fetching_latest_email", seqno=latest)
        session.state = MonitorState.FETCHING

        async with aclosing(session.client.fetch([latest], mark_seen=False)) as stream:
            async for fetched in stream:
                self._ensure_current(session)
                message = self._parse(fetched)
                if message is None:
                    continue
                logger.info("latest_email_fetched", subject=message.subject)
                self._dispatch(self._on_latest_email, message, "latest_email")

    def _parse(self, fetched: FetchedEmail) -> StructuredMessage | None:
        try:
            return self._parser.parse(fetched.raw_bytes, seqno=fetched.seqno)
        except Exception:
            logger.exception("email_parse_failed", seqno=fetched.seqno)
            return None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _is_current(self, session: _Session) -> bool:
        return self._running and self._session is session

    def _ensure_current(self, session: _Session) -> None:
        if not self._is_current(session):
            raise _SessionClosed

    async def _release(self, session: _Session, *, graceful: bool) -> bool:
        """Close the transport, then free the session slot.

        Returns *False* when the session was discarded in the meantime.
        """
        if graceful:
            await session.client.close()
        else:
            session.client.abort()

        if self._session is not session:
            return False
        self._session = None
        return self._running

    async def _finish(self, session: _Session) -> None:
        if not await self._release(session, graceful=True):
            return

        logger.info("imap_cycle_finished", mode=session.mode.value)
        if session.mode is PollMode.POLL:
            self._arm_timer(self._config.check_interval_seconds, reason="next_poll")
        else:
            self._resume_deferred_poll()

    async def _fail(self, session: _Session, exc: Exception) -> None:
        phase = session.state
        session.state = MonitorState.ERROR
        logger.error(
            "imap_cycle_failed",
            mode=session.mode.value,
            phase=phase.value,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        self._dispatch_error(exc)

        if not await self._release(session, graceful=False):
            return

        if session.mode is PollMode.POLL:
            logger.info(
                "imap_reconnect_scheduled",
                delay_seconds=self._config.reconnect_delay_seconds,
            )
            self._arm_timer(self._config.reconnect_delay_seconds, reason="reconnect")
        else:
            self._resume_deferred_poll()

    # ------------------------------------------------------------------
    # Handler dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, handler: MessageHandler, message: StructuredMessage, signal: str) -> None:
        if not self._running:
            return
        self._messages_emitted += 1
        self._spawn(self._invoke(handler, message, signal))

    def _dispatch_error(self, exc: Exception) -> None:
        if self._on_error is None or not self._running:
            return
        self._spawn(self._invoke_error(self._on_error, exc))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    @staticmethod
    async def _invoke(handler: MessageHandler, message: StructuredMessage, signal: str) -> None:
        try:
            await handler(message)
        except Exception:
            logger.exception(
                "email_handler_failed",
                signal=signal,
                message_id=message.message_id,
            )

    @staticmethod
    async def _invoke_error(handler: ErrorHandler, exc: Exception) -> None:
        try:
            await handler(exc)
        except Exception:
            logger.exception("error_handler_failed")
