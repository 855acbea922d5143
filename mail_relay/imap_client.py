"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import socket
import ssl
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass

import structlog

from .config import ImapConfig

logger = structlog.get_logger()

UNSEEN = "UNSEEN"
ALL = "ALL"


class MailboxError(Exception):
    """The IMAP server answered a command with a non-OK status."""


@dataclass
class FetchedEmail:
    """Raw email data fetched from IMAP."""

    seqno: int
    raw_bytes: bytes


class AsyncImapClient:
    """Async-friendly IMAP client for a single connection session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  Each
    phase of a session (connect, open inbox, search, fetch) is a
    separate call so the monitor can track which one failed.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport and login."""
        await asyncio.to_thread(self._connect_sync)
        logger.info("imap_connected", host=self._config.host, port=self._config.port)

    def _connect_sync(self) -> None:
        timeout = self._config.connect_timeout_seconds
        if self._config.tls:
            conn: imaplib.IMAP4 = imaplib.IMAP4_SSL(
                self._config.host,
                self._config.port,
                ssl_context=self._ssl_context(),
                timeout=timeout,
            )
        else:
            conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)
        self._conn = conn
        conn.login(self._config.user, self._config.password.get_secret_value())

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self._config.tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def open_inbox(self) -> int:
        """Select the configured mailbox read-write.  Returns its message count."""
        assert self._conn is not None, "Not connected"
        total = await asyncio.to_thread(self._select_sync)
        logger.info("imap_inbox_opened", mailbox=self._config.mailbox, total=total)
        return total

    def _select_sync(self) -> int:
        assert self._conn is not None
        status, data = self._conn.select(self._config.mailbox, readonly=False)
        if status != "OK":
            raise MailboxError(f"SELECT {self._config.mailbox} failed: {data!r}")
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    async def close(self) -> None:
        """Close mailbox and logout.  Errors while closing are logged, not raised."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await asyncio.to_thread(self._close_sync, conn)
        logger.info("imap_disconnected")

    @staticmethod
    def _close_sync(conn: imaplib.IMAP4) -> None:
        try:
            if conn.state == "SELECTED":
                conn.close()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("imap_close_failed", error=str(exc))
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("imap_logout_failed", error=str(exc))

    def abort(self) -> None:
        """Force-close the connection without a LOGOUT exchange.

        Safe to call from the event loop while a worker thread is blocked
        reading the connection.  Shutting the socket down makes the
        blocked read return at once; the buffered file is closed in the
        executor because closing it waits for that reader to let go.
        """
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            conn.sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            # Already disconnected by the server
            logger.debug("imap_socket_shutdown_failed", error=str(exc))

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._release_sync(conn)
        else:
            loop.run_in_executor(None, self._release_sync, conn)
        logger.info("imap_aborted")

    @staticmethod
    def _release_sync(conn: imaplib.IMAP4) -> None:
        try:
            conn.shutdown()
        except OSError as exc:
            logger.warning("imap_abort_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def search(self, criterion: str = UNSEEN) -> list[int]:
        """Return message sequence numbers matching *criterion*, ascending."""
        assert self._conn is not None, "Not connected"
        seqnos = await asyncio.to_thread(self._search_sync, criterion)
        logger.debug("imap_search_complete", criterion=criterion, found=len(seqnos))
        return seqnos

    def _search_sync(self, criterion: str) -> list[int]:
        assert self._conn is not None
        status, data = self._conn.search(None, criterion)
        if status != "OK":
            raise MailboxError(f"SEARCH {criterion} failed: {data!r}")
        if not data or not data[0]:
            return []
        return sorted(int(n) for n in data[0].split())

    async def fetch(
        self,
        seqnos: Iterable[int],
        *,
        mark_seen: bool,
    ) -> AsyncIterator[FetchedEmail]:
        """Yield the full RFC 822 source of each message, in order.

        ``RFC822`` sets the ``\\Seen`` flag on the server; ``BODY.PEEK[]``
        leaves it untouched.
        """
        item = "(RFC822)" if mark_seen else "(BODY.PEEK[])"
        for seqno in seqnos:
            if self._conn is None:
                raise MailboxError("Connection closed during fetch")
            raw_bytes = await asyncio.to_thread(self._fetch_sync, seqno, item)
            yield FetchedEmail(seqno=seqno, raw_bytes=raw_bytes)

    def _fetch_sync(self, seqno: int, item: str) -> bytes:
        assert self._conn is not None
        status, data = self._conn.fetch(str(seqno), item)
        if status != "OK" or not data:
            raise MailboxError(f"FETCH {seqno} failed: {data!r}")
        for part in data:
            if isinstance(part, tuple) and len(part) >= 2:
                return bytes(part[1])
        raise MailboxError(f"FETCH {seqno} returned no message body")
