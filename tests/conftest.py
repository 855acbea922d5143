"""Shared test fixtures for the mail relay test suite."""

from __future__ import annotations

from email import encoders
from email.mime.base import MIMEBase
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from mail_relay.config import DiscordConfig, ImapConfig, RelayConfig, RendererConfig
from mail_relay.models import EmailAttachment, StructuredMessage

# Smallest valid PNG header; content is never decoded in tests.
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        user="testuser",
        password="testpass",
        host="imap.test.com",
        port=993,
        tls=True,
        mailbox="INBOX",
        check_interval=10,
        reconnect_delay_seconds=0.01,
    )


@pytest.fixture
def discord_config() -> DiscordConfig:
    return DiscordConfig(
        bot_token="test-token",
        channel_id="123456",
        api_base_url="https://discord.test/api/v10",
        timeout_seconds=5.0,
    )


@pytest.fixture
def relay_config(imap_config: ImapConfig, discord_config: DiscordConfig) -> RelayConfig:
    return RelayConfig(
        keyword="going.com",
        console_enabled=False,
        health_enabled=False,
        imap=imap_config,
        discord=discord_config,
        renderer=RendererConfig(enabled=False),
    )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str | None = "Test Subject",
    from_addr: str | None = "sender@example.com",
    to_addr: str | None = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    date: str | None = "Sun, 01 Jun 2025 12:00:00 +0000",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    if subject is not None:
        msg["Subject"] = subject
    if from_addr is not None:
        msg["From"] = from_addr
    if to_addr is not None:
        msg["To"] = to_addr
    if message_id is not None:
        msg["Message-ID"] = message_id
    if date is not None:
        msg["Date"] = date
    return msg.as_bytes()


def _build_html_email(*, body_html: str = "<p>Hello</p>") -> bytes:
    msg = MIMEText(body_html, "html")
    msg["Subject"] = "HTML Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<html-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
    inline_images: list[tuple[str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "Going Deals <deals@going.com>"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for content_id, payload in inline_images or []:
        image = MIMEImage(payload, "png")
        image.add_header("Content-ID", f"<{content_id}>")
        image.add_header("Content-Disposition", "inline")
        msg.attach(image)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def html_eml_bytes() -> bytes:
    return _build_html_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("deal.png", "image/png", PNG_BYTES),
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
        ],
    )


@pytest.fixture
def message_factory():
    """Factory to create StructuredMessage instances with overrides."""

    def _make(**overrides) -> StructuredMessage:
        defaults = dict(
            message_id="<msg-factory@example.com>",
            subject="Cheap flights to Lisbon",
            sender="Going <deals@going.com>",
            recipients="me@example.com",
            text="Fares from $199",
        )
        defaults.update(overrides)
        return StructuredMessage(**defaults)

    return _make


@pytest.fixture
def image_attachment() -> EmailAttachment:
    return EmailAttachment(
        filename="deal.png",
        content_type="image/png",
        size=len(PNG_BYTES),
        content=PNG_BYTES,
    )
