"""Archive domain models.

Records are immutable dataclasses; stores hand out copies and updates go
through dataclasses.replace().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Literal

from wharchive.domain.errors import DataIntegrityError, ValidationError


# ── Enums ─────────────────────────────────────────────────


class Role(str, Enum):
    TOP_ADMIN = "top_admin"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def level(self) -> int:
        """Depth in the ownership tree (top_admin = 0)."""
        return _ROLE_LEVELS[self]


_ROLE_LEVELS = {Role.TOP_ADMIN: 0, Role.ADMIN: 1, Role.MEMBER: 2}


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Action(str, Enum):
    READ = "read"
    SEND = "send"
    SYNC = "sync"
    MANAGE = "manage"


class AckState(IntEnum):
    """Delivery progress of a message. Totally ordered by value.

    Values match the gateway's numeric status codes.
    """

    PENDING = 0
    SERVER = 1
    DELIVERED = 2
    READ = 3
    PLAYED = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "AckState":
        """Parse a gateway ack value (int, numeric string or status name).

        Raises:
            ValidationError: If the value is not a known ack state.
        """
        if isinstance(value, AckState):
            return value
        if isinstance(value, bool):
            raise ValidationError(f"invalid ack value: {value!r}")
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise ValidationError(f"invalid ack value: {value!r}") from None
        if isinstance(value, str):
            key = value.strip().upper()
            if key.isdigit():
                return cls.parse(int(key))
            if key in _ACK_ALIASES:
                return _ACK_ALIASES[key]
        raise ValidationError(f"invalid ack value: {value!r}")


_ACK_ALIASES: dict[str, AckState] = {
    "PENDING": AckState.PENDING,
    "ERROR": AckState.PENDING,
    "SERVER": AckState.SERVER,
    "SERVER_ACK": AckState.SERVER,
    "SENT": AckState.SERVER,
    "DEVICE": AckState.DELIVERED,
    "DELIVERED": AckState.DELIVERED,
    "DELIVERY_ACK": AckState.DELIVERED,
    "READ": AckState.READ,
    "PLAYED": AckState.PLAYED,
}


class SyncKind(str, Enum):
    INITIAL = "initial"
    GAP_FILL = "gap_fill"
    MANUAL = "manual"


class SyncRunStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


MessageType = Literal[
    "text",
    "image",
    "video",
    "audio",
    "voice",
    "document",
    "sticker",
    "location",
    "contact",
    "unknown",
]


# ── Records ───────────────────────────────────────────────


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role
    owner_id: str | None
    username: str
    full_name: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class Team:
    id: str
    admin_id: str
    name: str
    member_ids: frozenset[str] = frozenset()
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class Session:
    """One connected WhatsApp line (gateway instance)."""

    id: str
    instance_name: str
    admin_id: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    last_message_at: datetime | None = None
    is_active: bool = True
    last_connected_at: datetime | None = None
    gateway_metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class Assignment:
    """Grant of access on a session to exactly one member or one team."""

    id: str
    session_id: str
    assigned_by: str
    member_id: str | None = None
    team_id: str | None = None
    assigned_at: datetime | None = None

    def __post_init__(self) -> None:
        if (self.member_id is None) == (self.team_id is None):
            raise DataIntegrityError(
                "assignment must target exactly one of member or team"
            )


@dataclass(frozen=True)
class Contact:
    id: str
    session_id: str
    external_id: str
    display_name: str | None = None
    is_group: bool = False
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class MediaDescriptor:
    id: str
    message_id: str
    location: str | None
    mimetype: str | None = None
    filename: str | None = None
    uploaded: bool = False
    error: str | None = None


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    contact_id: str
    external_id: str
    message_type: str
    body: str
    direction: Direction
    ack: AckState
    timestamp: datetime
    has_media: bool = False
    media: MediaDescriptor | None = None
    reply_to_id: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class SyncRun:
    id: str
    session_id: str
    kind: SyncKind
    window_from: datetime | None
    window_to: datetime
    status: SyncRunStatus = SyncRunStatus.STARTED
    messages_synced: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    # Lease: the worker running the sync and its last sign of life
    worker_id: str | None = None
    heartbeat_at: datetime | None = None


@dataclass(frozen=True)
class SyncStatus:
    """Sync state of a session: idle, running, completed or failed."""

    session_id: str
    state: Literal["idle", "running", "completed", "failed"]
    last_run: SyncRun | None = None


@dataclass(frozen=True)
class ChatSummary:
    contact: Contact
    last_message: Message | None
    unread_count: int


@dataclass(frozen=True)
class SessionStats:
    total_messages: int
    total_contacts: int
    unread_messages: int
    messages_today: int
    media_messages: int
