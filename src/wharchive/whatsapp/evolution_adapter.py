"""Evolution API adapter - validate and normalize webhook payloads.

Webhook envelope: {"event": "messages.upsert", "instance": "<name>", "data": ...}

Event names are normalized the way Evolution itself spells them in its
config (MESSAGES_UPSERT, CONNECTION_UPDATE, ...), so both the dotted and the
upper-case forms are accepted.
"""

from __future__ import annotations

import json
from typing import Any

from wharchive.domain.errors import ValidationError
from wharchive.domain.models import AckState, SessionStatus
from wharchive.infra.time import from_epoch_seconds
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context

from .models import (
    AckUpdate,
    ConnectionUpdate,
    ContactUpdate,
    GatewayEvent,
    InboundMedia,
    InboundMessage,
)

logger = get_logger(__name__)


class InvalidPayloadError(ValidationError):
    """Raised when Evolution payload has invalid shape."""

    pass


MESSAGE_EVENTS = {"MESSAGES_UPSERT", "MESSAGES_SET"}
ACK_EVENTS = {"MESSAGES_UPDATE"}
CONTACT_EVENTS = {"CONTACTS_UPSERT", "CONTACTS_SET", "CONTACTS_UPDATE"}
CONNECTION_EVENTS = {"CONNECTION_UPDATE"}

# Evolution connection state -> session status
CONNECTION_STATES: dict[str, SessionStatus] = {
    "open": SessionStatus.CONNECTED,
    "connecting": SessionStatus.CONNECTING,
    "close": SessionStatus.DISCONNECTED,
    "refused": SessionStatus.FAILED,
}

# Content key -> (message type, media-bearing)
_CONTENT_TYPES: list[tuple[str, str, bool]] = [
    ("conversation", "text", False),
    ("extendedTextMessage", "text", False),
    ("imageMessage", "image", True),
    ("videoMessage", "video", True),
    ("audioMessage", "audio", True),
    ("documentMessage", "document", True),
    ("documentWithCaptionMessage", "document", True),
    ("stickerMessage", "sticker", True),
    ("locationMessage", "location", False),
    ("contactMessage", "contact", False),
]


def normalize_event_name(event: Any) -> str:
    """'messages.upsert' -> 'MESSAGES_UPSERT'."""
    if not isinstance(event, str) or not event.strip():
        raise InvalidPayloadError("missing or invalid event")
    return event.strip().upper().replace(".", "_")


def events_from_webhook(body: Any) -> list[GatewayEvent]:
    """Convert one webhook envelope into gateway events.

    Envelope-level problems raise InvalidPayloadError. Inside a batch
    (several messages or contacts), invalid items are logged and skipped
    so one bad item does not drop its neighbours.

    Returns:
        Events in delivery order. Empty for event types the archive ignores.
    """
    if not isinstance(body, dict):
        raise InvalidPayloadError("payload must be an object")

    event = normalize_event_name(body.get("event"))
    instance = body.get("instance")
    if not instance or not isinstance(instance, str):
        raise InvalidPayloadError("missing or invalid instance")

    data = body.get("data")

    if event in MESSAGE_EVENTS:
        return _batch(instance, "message", _items(data, "messages"), parse_message)
    if event in ACK_EVENTS:
        return _batch(instance, "ack", _items(data, "messages"), parse_ack)
    if event in CONTACT_EVENTS:
        return _batch(instance, "contact", _items(data, "contacts"), parse_contact)
    if event in CONNECTION_EVENTS:
        return [GatewayEvent(instance, "connection", parse_connection(data))]

    logger.info(
        "evolution event ignored",
        extra={"extra_fields": safe_log_context(event=event)},
    )
    return []


def _items(data: Any, list_key: str) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        nested = data.get(list_key)
        if isinstance(nested, list):
            return nested
        return [data]
    raise InvalidPayloadError("missing or invalid data")


def _batch(instance: str, event_type: str, items: list[Any], parse) -> list[GatewayEvent]:
    if len(items) == 1:
        return [GatewayEvent(instance, event_type, parse(items[0]))]

    events = []
    for index, item in enumerate(items):
        try:
            events.append(GatewayEvent(instance, event_type, parse(item)))
        except InvalidPayloadError as exc:
            logger.warning(
                "evolution batch item skipped",
                extra={
                    "extra_fields": safe_log_context(
                        event_type=event_type, index=index, reason=str(exc)
                    )
                },
            )
    return events


def _require_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidPayloadError(f"missing or invalid {what}")
    return value


def _require_str(value: Any, what: str) -> str:
    if not value or not isinstance(value, str):
        raise InvalidPayloadError(f"missing or invalid {what}")
    return value


def _parse_timestamp(value: Any):
    # Some Baileys builds serialize Long as {"low": ..., "high": ...}
    if isinstance(value, dict):
        value = value.get("low")
    if value is None or isinstance(value, bool):
        raise InvalidPayloadError("missing or invalid messageTimestamp")
    try:
        return from_epoch_seconds(value)
    except (TypeError, ValueError, OverflowError, OSError):
        raise InvalidPayloadError("missing or invalid messageTimestamp") from None


def _parse_optional_ack(value: Any) -> AckState | None:
    if value is None:
        return None
    try:
        return AckState.parse(value)
    except ValidationError:
        return None


def _content_of(message: dict[str, Any]) -> tuple[str, str, dict[str, Any] | None]:
    """Return (message_type, body, media node) for a message content dict."""
    for key, message_type, has_media in _CONTENT_TYPES:
        node = message.get(key)
        if node is None:
            continue

        if key == "conversation":
            return message_type, str(node), None
        if not isinstance(node, dict):
            continue
        if key == "documentWithCaptionMessage":
            node = (node.get("message") or {}).get("documentMessage") or {}

        if key == "extendedTextMessage":
            return message_type, node.get("text") or "", None
        if key == "locationMessage":
            body = json.dumps(
                {
                    "latitude": node.get("degreesLatitude"),
                    "longitude": node.get("degreesLongitude"),
                }
            )
            return message_type, body, None
        if key == "contactMessage":
            return message_type, node.get("displayName") or "", None
        if key == "audioMessage" and node.get("ptt"):
            return "voice", "", node
        if key in ("documentMessage", "documentWithCaptionMessage"):
            return message_type, node.get("caption") or node.get("fileName") or "", node
        return message_type, node.get("caption") or "", node if has_media else None

    return "unknown", "", None


def _quoted_id(data: dict[str, Any], message: dict[str, Any]) -> str | None:
    candidates = [data.get("contextInfo")]
    for node in message.values():
        if isinstance(node, dict):
            candidates.append(node.get("contextInfo"))
    for context in candidates:
        if isinstance(context, dict) and context.get("stanzaId"):
            return str(context["stanzaId"])
    return None


def parse_message(data: Any, *, default_ack: AckState | None = None) -> InboundMessage:
    """Normalize one Evolution message record (webhook item or history record).

    Raises:
        InvalidPayloadError: If key.id, key.remoteJid or messageTimestamp is
            missing or invalid.
    """
    data = _require_dict(data, "message record")
    key = _require_dict(data.get("key"), "key")
    external_id = _require_str(key.get("id"), "message_id")
    remote_jid = _require_str(key.get("remoteJid"), "remoteJid")

    message = data.get("message")
    if not isinstance(message, dict):
        message = {}
    message_type, body, media_node = _content_of(message)

    media = None
    if media_node is not None:
        media = InboundMedia(
            mimetype=media_node.get("mimetype"),
            filename=media_node.get("fileName"),
            url=media_node.get("url") or data.get("mediaUrl"),
        )

    ack = _parse_optional_ack(data.get("status"))

    return InboundMessage(
        external_id=external_id,
        remote_jid=remote_jid,
        from_me=bool(key.get("fromMe")),
        message_type=message_type,
        body=body,
        timestamp=_parse_timestamp(data.get("messageTimestamp")),
        push_name=data.get("pushName") or None,
        ack=ack if ack is not None else default_ack,
        media=media,
        quoted_external_id=_quoted_id(data, message),
        raw=data,
    )


def parse_ack(data: Any) -> AckUpdate:
    """Normalize a messages.update item.

    Accepts both {"key": {"id"}, "update": {"status"}} and the flat
    {"keyId", "remoteJid", "status"} shape.
    """
    data = _require_dict(data, "ack record")
    key = data.get("key") if isinstance(data.get("key"), dict) else {}
    update = data.get("update") if isinstance(data.get("update"), dict) else {}

    external_id = _require_str(key.get("id") or data.get("keyId"), "message_id")
    status = update.get("status", data.get("status"))
    if status is None:
        raise InvalidPayloadError("missing status")
    try:
        ack = AckState.parse(status)
    except ValidationError:
        raise InvalidPayloadError(f"invalid status: {status!r}") from None

    return AckUpdate(
        external_id=external_id,
        ack=ack,
        remote_jid=key.get("remoteJid") or data.get("remoteJid"),
    )


def parse_contact(data: Any) -> ContactUpdate:
    data = _require_dict(data, "contact record")
    remote_jid = _require_str(data.get("id") or data.get("remoteJid"), "contact id")
    name = (
        data.get("name")
        or data.get("notify")
        or data.get("verifiedName")
        or data.get("pushName")
    )
    return ContactUpdate(
        remote_jid=remote_jid,
        display_name=name or None,
        avatar_url=data.get("profilePicUrl") or data.get("profilePictureUrl") or None,
    )


def parse_connection(data: Any) -> ConnectionUpdate:
    data = _require_dict(data, "connection data")
    state = _require_str(data.get("state"), "state")
    status = CONNECTION_STATES.get(state.lower())
    if status is None:
        raise InvalidPayloadError(f"unknown connection state: {state!r}")
    return ConnectionUpdate(
        status=status,
        state=state,
        status_reason=data.get("statusReason"),
    )
