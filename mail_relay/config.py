"""Relay configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Required credentials have no default: building :class:`RelayConfig`
without them raises :class:`pydantic.ValidationError`.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

# Settings may also come from a .env file in the working directory.
_ENV_FILE = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


class ImapConfig(BaseSettings):
    """IMAP mailbox connection and polling settings."""

    model_config = {"env_prefix": "EMAIL_", **_ENV_FILE}

    user: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")
    host: str = Field(default="imap.gmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    tls: bool = Field(default=True, description="Use an implicit TLS connection")
    tls_verify: bool = Field(
        default=False,
        description="Verify the server certificate (off: any certificate is accepted)",
    )
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    check_interval: int = Field(
        default=3_600_000,
        description="Milliseconds between the end of one poll cycle and the next",
    )
    reconnect_delay_seconds: float = Field(
        default=30.0,
        description="Seconds to wait before reconnecting after a failed poll cycle",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        description="Socket timeout for the IMAP connection",
    )

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval / 1000.0


class DiscordConfig(BaseSettings):
    """Discord bot credentials and destination channel."""

    model_config = {"env_prefix": "DISCORD_", **_ENV_FILE}

    bot_token: SecretStr = Field(description="Discord bot token")
    channel_id: str = Field(description="ID of the channel emails are forwarded to")
    api_base_url: str = Field(
        default="https://discord.com/api/v10",
        description="Base URL of the Discord REST API",
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    embed_color: int = Field(default=0x5865F2, description="Accent color of the embed")


class RendererConfig(BaseSettings):
    """Headless browser snapshot settings."""

    model_config = {"env_prefix": "RENDERER_", **_ENV_FILE}

    enabled: bool = Field(default=False, description="Attach a rendered snapshot of each email")
    viewport_width: int = Field(default=800, description="Viewport width in CSS pixels")
    viewport_height: int = Field(default=1200, description="Viewport height in CSS pixels")
    device_scale_factor: float = Field(default=2.0, description="Device pixel ratio")
    timeout_ms: int = Field(default=10_000, description="Page content load timeout")
    settle_ms: int = Field(
        default=500,
        description="Milliseconds to wait for fonts/styles before the screenshot",
    )


class RelayConfig(BaseSettings):
    """Root configuration for the relay process.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "RELAY_", **_ENV_FILE}

    keyword: str = Field(
        default="going.com",
        description="Only emails mentioning this keyword are forwarded",
    )
    link_text: str = Field(
        default="View flight details",
        description="Anchor text of the details link appended to forwarded emails",
    )
    console_enabled: bool = Field(default=True, description="Read operator commands from stdin")
    health_enabled: bool = Field(default=True, description="Serve /health and /ready")
    health_port: int = Field(default=8080, description="Port for health probe endpoints")
    log_json: bool | None = Field(
        default=None,
        description="Emit JSON log lines; unset picks console output only for an interactive terminal",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    renderer: RendererConfig = Field(default_factory=RendererConfig)
