"""WhatsApp gateway event models.

Typed, normalized forms of what the gateway delivers. They carry PII
(JIDs, names, message text): never log them, use safe_log_context().
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

from wharchive.domain.models import AckState, SessionStatus

EventType = Literal["message", "ack", "contact", "connection"]


@dataclass(frozen=True)
class InboundMedia:
    """Media reference found in a message. Bytes are fetched by MediaStorage."""

    mimetype: str | None
    filename: str | None
    url: str | None


@dataclass(frozen=True)
class InboundMessage:
    external_id: str
    remote_jid: str
    from_me: bool
    message_type: str
    body: str
    timestamp: datetime
    push_name: str | None = None
    ack: AckState | None = None
    media: InboundMedia | None = None
    quoted_external_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_media(self) -> bool:
        return self.media is not None

    @property
    def contact_external_id(self) -> str:
        return jid_user(self.remote_jid)

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.remote_jid)


@dataclass(frozen=True)
class AckUpdate:
    external_id: str
    ack: AckState
    remote_jid: str | None = None


@dataclass(frozen=True)
class ContactUpdate:
    remote_jid: str
    display_name: str | None = None
    avatar_url: str | None = None

    @property
    def contact_external_id(self) -> str:
        return jid_user(self.remote_jid)

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.remote_jid)


@dataclass(frozen=True)
class ConnectionUpdate:
    """Connectivity change. state is the gateway's raw value."""

    status: SessionStatus
    state: str
    status_reason: Any = None


EventPayload = Union[InboundMessage, AckUpdate, ContactUpdate, ConnectionUpdate]


@dataclass(frozen=True)
class GatewayEvent:
    """One delivery from the gateway, addressed to a session by instance name."""

    source_id: str
    type: EventType
    payload: EventPayload


def jid_user(jid: str) -> str:
    """User part of a JID: '5511999999999@s.whatsapp.net' -> '5511999999999'."""
    return jid.split("@", 1)[0]


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@g.us")
