"""Publisher: filter an email, build the Discord embed and send it."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from .discord_client import DiscordClient, DiscordFile
from .filters import matches_keyword
from .links import DEFAULT_LINK_TEXT, extract_details_link
from .models import StructuredMessage

logger = structlog.get_logger()

SNAPSHOT_FILENAME = "email.png"


def build_embed(
    message: StructuredMessage,
    *,
    color: int,
    link: str | None = None,
    link_text: str = DEFAULT_LINK_TEXT,
    image_filename: str | None = None,
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Return the embed object for *message*."""
    description = f"**{message.subject}**"
    if link:
        description += f"\n\n[{link_text}]({link})"

    embed: dict[str, Any] = {
        "color": color,
        "description": description,
        "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
    }
    if image_filename:
        embed["image"] = {"url": f"attachment://{image_filename}"}
    return embed


class DiscordPublisher:
    """Forwards relevant emails to one preconfigured channel.

    Publish errors are logged and the email is dropped; nothing is
    retried or queued.
    """

    def __init__(
        self,
        client: DiscordClient,
        channel_id: str,
        *,
        keyword: str,
        link_text: str = DEFAULT_LINK_TEXT,
        color: int = 0x5865F2,
    ) -> None:
        self._client = client
        self._channel_id = channel_id
        self._keyword = keyword
        self._link_text = link_text
        self._color = color

        self._emails_forwarded: int = 0
        self._emails_skipped: int = 0
        self._emails_failed: int = 0

    @property
    def emails_forwarded(self) -> int:
        return self._emails_forwarded

    @property
    def emails_skipped(self) -> int:
        return self._emails_skipped

    @property
    def emails_failed(self) -> int:
        return self._emails_failed

    def accepts(self, message: StructuredMessage) -> bool:
        return matches_keyword(message, self._keyword)

    async def publish(self, message: StructuredMessage, snapshot: bytes | None = None) -> bool:
        """Send *message* to the channel.  Returns *True* if it was posted."""
        if not self.accepts(message):
            self._emails_skipped += 1
            logger.info(
                "email_skipped",
                reason="keyword_not_found",
                keyword=self._keyword,
                subject=message.subject,
            )
            return False

        taken: set[str] = set()
        files = [
            DiscordFile(
                filename=_unique_filename(
                    _sanitize_filename(att.filename or f"image_{index}.png"), taken
                ),
                content=att.content,
                content_type=att.content_type,
            )
            for index, att in enumerate(message.image_attachments)
        ]
        image_count = len(files)
        if snapshot:
            files.append(
                DiscordFile(_unique_filename(SNAPSHOT_FILENAME, taken), snapshot, "image/png")
            )

        link = extract_details_link(message, self._link_text)
        if link:
            logger.info("details_link_found", url=link)

        embed = build_embed(
            message,
            color=self._color,
            link=link,
            link_text=self._link_text,
            image_filename=files[0].filename if files else None,
        )

        try:
            await self._client.send_message(self._channel_id, {"embeds": [embed]}, files)
        except httpx.HTTPStatusError as exc:
            self._emails_failed += 1
            logger.error(
                "email_publish_failed",
                subject=message.subject,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return False
        except httpx.HTTPError as exc:
            self._emails_failed += 1
            logger.error("email_publish_failed", subject=message.subject, error=str(exc))
            return False

        self._emails_forwarded += 1
        logger.info(
            "email_forwarded",
            subject=message.subject,
            images=image_count,
            snapshot=bool(snapshot),
        )
        return True


def _sanitize_filename(name: str) -> str:
    """Replace characters Discord rewrites in attachment names."""
    return re.sub(r"[^\w.\-]", "_", name)


def _unique_filename(name: str, taken: set[str]) -> str:
    """Return *name*, or ``stem_<n>.ext`` if it is already in *taken*.

    Discord resolves ``attachment://`` by filename, so every file in one
    message needs its own.
    """
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    candidate = name
    counter = 1
    while candidate in taken:
        candidate = f"{stem}_{counter}{dot}{ext}"
        counter += 1
    taken.add(candidate)
    return candidate
