"""Mail Relay: forward emails from an IMAP mailbox to a Discord channel."""

from .app import RelayApp
from .config import DiscordConfig, ImapConfig, RelayConfig, RendererConfig
from .discord_client import DiscordClient, DiscordFile
from .filters import matches_keyword
from .imap_client import AsyncImapClient, FetchedEmail, MailboxError
from .links import extract_details_link
from .logging import setup_logging
from .models import (
    EmailAttachment,
    MonitorState,
    OnDemandResult,
    PollMode,
    RelayStatus,
    StructuredMessage,
)
from .monitor import EmailMonitor
from .parser import MimeParser
from .publisher import DiscordPublisher
from .renderer import EmailRenderer, build_email_html

__all__ = [
    "AsyncImapClient",
    "DiscordClient",
    "DiscordConfig",
    "DiscordFile",
    "DiscordPublisher",
    "EmailAttachment",
    "EmailMonitor",
    "EmailRenderer",
    "FetchedEmail",
    "ImapConfig",
    "MailboxError",
    "MimeParser",
    "MonitorState",
    "OnDemandResult",
    "PollMode",
    "RelayApp",
    "RelayConfig",
    "RelayStatus",
    "RendererConfig",
    "StructuredMessage",
    "build_email_html",
    "extract_details_link",
    "matches_keyword",
    "setup_logging",
]
