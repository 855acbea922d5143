"""Async HTTP client for the Discord REST API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from .config import DiscordConfig

logger = structlog.get_logger()


@dataclass
class DiscordFile:
    """A binary file uploaded alongside a message."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class DiscordClient:
    """Sends messages to a Discord channel as a bot.

    Only the two endpoints the relay needs are wrapped: ``GET /users/@me``
    to verify the token and ``POST /channels/{id}/messages``.
    """

    def __init__(self, config: DiscordConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.api_base_url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            headers={
                "Authorization": f"Bot {self._config.bot_token.get_secret_value()}",
                "User-Agent": "DiscordBot (mail-relay, 0.1.0)",
            },
        )
        logger.info("discord_client_started", base_url=self._config.api_base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("discord_client_stopped")

    async def login(self) -> str:
        """Verify the token and return the bot's ``name#discriminator`` tag.

        Raises :class:`httpx.HTTPStatusError` when the token is rejected.
        """
        if self._client is None:
            raise AssertionError("Client not started")

        response = await self._client.get("/users/@me")
        response.raise_for_status()
        user = response.json()
        discriminator = user.get("discriminator")
        tag = user.get("username", "unknown")
        if discriminator and discriminator != "0":
            tag = f"{tag}#{discriminator}"
        logger.info("discord_logged_in", bot=tag)
        return tag

    async def send_message(
        self,
        channel_id: str,
        payload: dict[str, Any],
        files: list[DiscordFile] | None = None,
    ) -> dict[str, Any]:
        """POST a message, uploading *files* as multipart attachments.

        Raises :class:`httpx.HTTPStatusError` on non-2xx responses
        (403 missing permission, 404 unknown channel, 429 rate limited).
        """
        if self._client is None:
            raise AssertionError("Client not started")

        url = f"/channels/{channel_id}/messages"
        if files:
            body = dict(payload)
            body["attachments"] = [
                {"id": index, "filename": f.filename} for index, f in enumerate(files)
            ]
            response = await self._client.post(
                url,
                data={"payload_json": json.dumps(body)},
                files=[
                    (f"files[{index}]", (f.filename, f.content, f.content_type))
                    for index, f in enumerate(files)
                ],
            )
        else:
            response = await self._client.post(url, json=payload)

        response.raise_for_status()
        logger.debug(
            "discord_message_sent",
            channel_id=channel_id,
            files=len(files or []),
            status_code=response.status_code,
        )
        return response.json()
