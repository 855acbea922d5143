"""MIME parser: raw RFC 822 bytes to a :class:`StructuredMessage`.

Walks the whole message to pick the first plain-text and HTML bodies
and collect attachments.  Missing fields get the placeholders from
:mod:`mail_relay.models`.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import time
from datetime import datetime

import html2text

from .models import (
    NO_CONTENT,
    NO_SUBJECT,
    UNKNOWN_ADDRESS,
    EmailAttachment,
    StructuredMessage,
)


class MimeParser:
    """Stateless parser: raw RFC 822 bytes → StructuredMessage."""

    def __init__(self) -> None:
        self._html_converter = html2text.HTML2Text()
        self._html_converter.ignore_links = False
        self._html_converter.ignore_images = True
        self._html_converter.body_width = 0  # No line wrapping

    def parse(self, raw_bytes: bytes, *, seqno: int | None = None) -> StructuredMessage:
        """Parse *raw_bytes*.

        *seqno* is only used to build a fallback identifier when the
        message carries no ``Message-ID`` header.
        """
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        body_text, body_html = self._extract_bodies(msg)

        return StructuredMessage(
            message_id=self._message_id(msg, seqno),
            subject=str(msg.get("Subject", "")).strip() or NO_SUBJECT,
            sender=self._format_addresses(msg, "From"),
            recipients=self._format_addresses(msg, "To"),
            date=self._parse_date(msg),
            text=self._text_content(body_text, body_html),
            html=body_html or None,
            attachments=tuple(self._extract_attachments(msg)),
        )

    def _message_id(self, msg: email.message.Message, seqno: int | None) -> str:
        message_id = str(msg.get("Message-ID", "")).strip()
        if message_id:
            return message_id
        return f"seq-{seqno if seqno is not None else 0}-{int(time.time() * 1000)}"

    def _text_content(self, body_text: str | None, body_html: str | None) -> str:
        if body_text and body_text.strip():
            return body_text
        if body_html and body_html.strip():
            converted = self._html_converter.handle(body_html).strip()
            if converted:
                return converted
        return NO_CONTENT

    def _extract_bodies(self, msg: email.message.EmailMessage) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.is_multipart():
                continue
            if part.get_content_disposition() == "attachment":
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(self, msg: email.message.EmailMessage) -> list[EmailAttachment]:
        """Walk MIME parts and collect attachments and inline images."""
        attachments: list[EmailAttachment] = []

        for part in msg.walk():
            if part.is_multipart():
                continue

            disposition = part.get_content_disposition()
            filename = part.get_filename()
            inline_image = part.get_content_maintype() == "image" and part.get("Content-ID")

            if disposition != "attachment" and not filename and not inline_image:
                continue

            payload = part.get_payload(decode=True)
            if payload is None:
                continue

            attachments.append(
                EmailAttachment(
                    filename=filename or f"attachment-{len(attachments)}",
                    content_type=part.get_content_type(),
                    size=len(payload),
                    content=payload,
                )
            )

        return attachments

    @staticmethod
    def _format_addresses(msg: email.message.EmailMessage, name: str) -> str:
        header = msg.get(name)
        if header is None:
            return UNKNOWN_ADDRESS

        addresses = getattr(header, "addresses", None)
        if addresses:
            rendered = [str(addr) or addr.addr_spec for addr in addresses]
            joined = ", ".join(r for r in rendered if r)
            if joined:
                return joined

        return str(header).strip() or UNKNOWN_ADDRESS

    @staticmethod
    def _parse_date(msg: email.message.EmailMessage) -> datetime | None:
        try:
            header = msg.get("Date")
            return getattr(header, "datetime", None) if header is not None else None
        except (TypeError, ValueError, IndexError):
            return None
