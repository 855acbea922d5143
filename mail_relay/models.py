"""Data models shared by the monitor, renderer and publisher."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

NO_SUBJECT = "(No Subject)"
NO_CONTENT = "(No content)"
UNKNOWN_ADDRESS = "Unknown"


class RelayStatus(str, Enum):
    """Runtime status of the relay process."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class MonitorState(str, Enum):
    """Lifecycle state of the email monitor."""

    IDLE = "idle"
    CONNECTING = "connecting"
    INBOX_OPEN = "inbox_open"
    SCANNING = "scanning"
    FETCHING = "fetching"
    WAITING = "waiting"
    ERROR = "error"


class PollMode(str, Enum):
    """What a connection session scans for."""

    POLL = "poll"  # unseen messages, marked seen on fetch
    ON_DEMAND = "on_demand"  # latest message only, left unseen


class OnDemandResult(str, Enum):
    """Outcome of a manual fetch request."""

    STARTED = "started"
    IDLE = "idle"
    BUSY = "busy"


class EmailAttachment(BaseModel):
    """A single attachment extracted from a MIME email."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content_type: str
    size: int
    content: bytes = Field(repr=False)

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/") and bool(self.content)


class StructuredMessage(BaseModel):
    """Normalized, immutable representation of one mailbox message."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(min_length=1, description="Stable unique identifier")
    subject: str = NO_SUBJECT
    sender: str = UNKNOWN_ADDRESS
    recipients: str = UNKNOWN_ADDRESS
    date: datetime | None = None
    text: str = NO_CONTENT
    html: str | None = None
    attachments: tuple[EmailAttachment, ...] = ()

    @property
    def image_attachments(self) -> list[EmailAttachment]:
        return [att for att in self.attachments if att.is_image]


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service: str = Field(description="Name of the service")
    status: RelayStatus = Field(description="Current relay status")
    monitor_state: MonitorState = Field(description="Current email monitor state")
    uptime_seconds: float = Field(description="Seconds since the relay started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Counters and timestamps (last poll time, emails forwarded)",
    )
