"""Tests for mail_relay.imap_client."""

from __future__ import annotations

import asyncio
import imaplib
import socket
import ssl
import time
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from mail_relay.config import ImapConfig
from mail_relay.imap_client import ALL, UNSEEN, AsyncImapClient, FetchedEmail, MailboxError
from mail_relay.models import MonitorState
from mail_relay.monitor import EmailMonitor


@pytest.fixture
def client(imap_config: ImapConfig) -> AsyncImapClient:
    return AsyncImapClient(imap_config)


def _make_mock_imap(
    *,
    search_ids: list[bytes] | None = None,
    fetch_data: dict[str, bytes] | None = None,
    total: bytes = b"3",
) -> MagicMock:
    """Create a mock imaplib.IMAP4_SSL with programmed responses."""
    mock = MagicMock()
    mock.state = "SELECTED"
    mock.login.return_value = ("OK", [b"Logged in"])
    mock.select.return_value = ("OK", [total])
    mock.close.return_value = ("OK", [b"Closed"])
    mock.logout.return_value = ("BYE", [b"Bye"])
    mock.noop.return_value = ("OK", [b""])
    mock.search.return_value = ("OK", [b" ".join(search_ids or [])])

    fetch_data = fetch_data or {}

    def fetch(seqno: str, item: str):
        raw = fetch_data.get(seqno)
        if raw is None:
            return ("NO", [b"no such message"])
        return ("OK", [(f"{seqno} {item[1:-1]} {{{len(raw)}}}".encode(), raw), b")"])

    mock.fetch.side_effect = fetch
    return mock


class TestAsyncImapClientConnect:
    @pytest.mark.asyncio
    async def test_connect_ssl(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()

            args, kwargs = MockSSL.call_args
            assert args == ("imap.test.com", 993)
            assert isinstance(kwargs["ssl_context"], ssl.SSLContext)
            mock_conn.login.assert_called_once_with("testuser", "testpass")
            assert client._conn is not None

    @pytest.mark.asyncio
    async def test_ssl_context_accepts_any_certificate_by_default(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            await client.connect()
            context = MockSSL.call_args.kwargs["ssl_context"]
            assert context.verify_mode == ssl.CERT_NONE
            assert context.check_hostname is False

    @pytest.mark.asyncio
    async def test_ssl_context_verifies_when_configured(self, imap_config: ImapConfig):
        config = imap_config.model_copy(update={"tls_verify": True})
        client = AsyncImapClient(config)
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            await client.connect()
            context = MockSSL.call_args.kwargs["ssl_context"]
            assert context.verify_mode == ssl.CERT_REQUIRED

    @pytest.mark.asyncio
    async def test_connect_plain(self):
        config = ImapConfig(user="u", password="p", host="imap.test.com", port=143, tls=False)
        client = AsyncImapClient(config)
        with patch("mail_relay.imap_client.imaplib.IMAP4") as MockIMAP:
            MockIMAP.return_value = _make_mock_imap()
            await client.connect()
            MockIMAP.assert_called_once_with("imap.test.com", 143, timeout=30.0)

    @pytest.mark.asyncio
    async def test_login_failure_propagates(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
            MockSSL.return_value = mock_conn
            with pytest.raises(imaplib.IMAP4.error):
                await client.connect()


class TestAsyncImapClientInbox:
    @pytest.mark.asyncio
    async def test_open_inbox_returns_total(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(total=b"17")
            MockSSL.return_value = mock_conn
            await client.connect()
            assert await client.open_inbox() == 17
            mock_conn.select.assert_called_once_with("INBOX", readonly=False)

    @pytest.mark.asyncio
    async def test_open_inbox_failure(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.select.return_value = ("NO", [b"Mailbox doesn't exist"])
            MockSSL.return_value = mock_conn
            await client.connect()
            with pytest.raises(MailboxError):
                await client.open_inbox()


class TestAsyncImapClientSearch:
    @pytest.mark.asyncio
    async def test_search_empty(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(search_ids=[])
            await client.connect()
            assert await client.search(UNSEEN) == []

    @pytest.mark.asyncio
    async def test_search_returns_sorted_ints(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(search_ids=[b"7", b"2", b"10"])
            MockSSL.return_value = mock_conn
            await client.connect()
            assert await client.search(ALL) == [2, 7, 10]
            mock_conn.search.assert_called_once_with(None, "ALL")

    @pytest.mark.asyncio
    async def test_search_failure(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.search.return_value = ("BAD", [b"parse error"])
            MockSSL.return_value = mock_conn
            await client.connect()
            with pytest.raises(MailboxError):
                await client.search(UNSEEN)


class TestAsyncImapClientFetch:
    @pytest.mark.asyncio
    async def test_fetch_marks_seen_with_rfc822(
        self, client: AsyncImapClient, plain_eml_bytes: bytes
    ):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(fetch_data={"1": plain_eml_bytes, "2": plain_eml_bytes})
            MockSSL.return_value = mock_conn
            await client.connect()

            results = [f async for f in client.fetch([1, 2], mark_seen=True)]
            assert [r.seqno for r in results] == [1, 2]
            assert all(isinstance(r, FetchedEmail) for r in results)
            assert results[0].raw_bytes == plain_eml_bytes
            mock_conn.fetch.assert_any_call("1", "(RFC822)")

    @pytest.mark.asyncio
    async def test_fetch_peek_leaves_unseen(self, client: AsyncImapClient, plain_eml_bytes: bytes):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(fetch_data={"5": plain_eml_bytes})
            MockSSL.return_value = mock_conn
            await client.connect()

            results = [f async for f in client.fetch([5], mark_seen=False)]
            assert len(results) == 1
            mock_conn.fetch.assert_called_once_with("5", "(BODY.PEEK[])")

    @pytest.mark.asyncio
    async def test_fetch_failure(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(fetch_data={})
            await client.connect()
            with pytest.raises(MailboxError):
                async for _ in client.fetch([9], mark_seen=True):
                    pass


class TestAsyncImapClientDisconnect:
    @pytest.mark.asyncio
    async def test_close(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()
            await client.close()
            mock_conn.close.assert_called_once()
            mock_conn.logout.assert_called_once()
            assert client._conn is None

    @pytest.mark.asyncio
    async def test_close_swallows_logout_errors(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.logout.side_effect = OSError("connection reset")
            MockSSL.return_value = mock_conn
            await client.connect()
            await client.close()  # should not raise
            assert client._conn is None

    @pytest.mark.asyncio
    async def test_close_when_not_connected(self, client: AsyncImapClient):
        await client.close()  # should not raise

    @pytest.mark.asyncio
    async def test_abort_shuts_down_socket(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()
            client.abort()

            mock_conn.sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
            assert client._conn is None
            # The buffered file is released off the event loop.
            for _ in range(100):
                if mock_conn.shutdown.called:
                    break
                await asyncio.sleep(0.01)
            mock_conn.shutdown.assert_called_once()
            mock_conn.logout.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_tolerates_dead_socket(self, client: AsyncImapClient):
        with patch("mail_relay.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.sock.shutdown.side_effect = OSError("not connected")
            MockSSL.return_value = mock_conn
            await client.connect()
            client.abort()  # should not raise
            assert client._conn is None

    def test_abort_without_event_loop(self, imap_config: ImapConfig):
        client = AsyncImapClient(imap_config)
        mock_conn = _make_mock_imap()
        client._conn = mock_conn
        client.abort()
        mock_conn.sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
        mock_conn.shutdown.assert_called_once()

    def test_abort_when_not_connected(self, client: AsyncImapClient):
        client.abort()  # should not raise


class StallingImapServer:
    """Plain-text IMAP server that never answers SEARCH."""

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.release = asyncio.Event()
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        assert self._server is not None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)

    async def stop(self) -> None:
        self.release.set()
        if self._server is not None:
            self._server.close()
        # Let the stalled handler close its side.
        await asyncio.sleep(0.01)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.write(b"* OK IMAP4rev1 ready\r\n")
        try:
            await writer.drain()
            while line := await reader.readline():
                tag, command = line.decode().split(" ", 2)[:2]
                command = command.strip().upper()
                self.commands.append(command)
                if command == "SEARCH":
                    await self.release.wait()
                    break
                if command == "CAPABILITY":
                    writer.write(b"* CAPABILITY IMAP4rev1\r\n")
                elif command == "SELECT":
                    writer.write(b"* 1 EXISTS\r\n* 0 RECENT\r\n")
                writer.write(f"{tag} OK done\r\n".encode())
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()


class TestAbortWhileBlocked:
    @pytest_asyncio.fixture
    async def server(self) -> AsyncIterator[StallingImapServer]:
        s = StallingImapServer()
        await s.start()
        yield s
        await s.stop()

    @pytest.fixture
    def plain_config(self, imap_config: ImapConfig, server: StallingImapServer) -> ImapConfig:
        return imap_config.model_copy(
            update={
                "host": "127.0.0.1",
                "port": server.port,
                "tls": False,
                "connect_timeout_seconds": 10.0,
            }
        )

    async def _wait_for_command(self, server: StallingImapServer, command: str) -> None:
        for _ in range(200):
            if command in server.commands:
                return
            await asyncio.sleep(0.01)
        raise AssertionError(f"server never received {command}, got {server.commands}")

    @pytest.mark.asyncio
    async def test_abort_returns_while_search_is_pending(
        self, plain_config: ImapConfig, server: StallingImapServer
    ):
        client = AsyncImapClient(plain_config)
        await client.connect()
        await client.open_inbox()

        search = asyncio.create_task(client.search(UNSEEN))
        await self._wait_for_command(server, "SEARCH")

        started = time.monotonic()
        client.abort()
        assert time.monotonic() - started < 1.0

        with pytest.raises((imaplib.IMAP4.abort, OSError)):
            await asyncio.wait_for(search, timeout=2.0)

    @pytest.mark.asyncio
    async def test_monitor_stop_does_not_block_event_loop(
        self, plain_config: ImapConfig, server: StallingImapServer
    ):
        on_error = AsyncMock()
        monitor = EmailMonitor(plain_config, on_new_email=AsyncMock(), on_error=on_error)
        monitor.start()
        await self._wait_for_command(server, "SEARCH")
        assert monitor.state is MonitorState.SCANNING

        started = time.monotonic()
        monitor.stop()
        assert time.monotonic() - started < 1.0

        await asyncio.wait_for(monitor._cycle_task, timeout=2.0)
        assert monitor.state is MonitorState.IDLE
        on_error.assert_not_awaited()
