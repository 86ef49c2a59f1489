"""Ingestion pipeline - gateway events into the message archive.

Guarantees, per session:
- messages are upserted by (session_id, external_id); redelivery is a no-op
  apart from ack advancement
- ack only moves forward (pending < server < delivered < read < played);
  stale updates are logged and discarded
- events for the same (session, contact) are handled one at a time
- after every message write the post-write hooks run in order: watermark
  advance, media recording, listeners

Duplicate and out-of-order events are steady-state traffic, never errors.
"""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Literal, Protocol

from wharchive.domain.access import AccessResolver
from wharchive.domain.errors import ValidationError
from wharchive.domain.models import (
    AckState,
    Contact,
    Direction,
    MediaDescriptor,
    Message,
    Session,
)
from wharchive.domain.sessions import SessionService
from wharchive.infra.keyed_lock import KeyedLock
from wharchive.infra.store import ArchiveStore
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import id_prefix, safe_log_context
from wharchive.whatsapp.models import (
    AckUpdate,
    ConnectionUpdate,
    ContactUpdate,
    GatewayEvent,
    InboundMedia,
    InboundMessage,
)

logger = get_logger(__name__)

DEFAULT_EARLY_ACK_CAPACITY = 1000

Outcome = Literal[
    "created",
    "duplicate",
    "ack_applied",
    "ack_stale",
    "ack_deferred",
    "contact_upserted",
    "status_updated",
]

MessageListener = Callable[[Message], None]


class MediaStorage(Protocol):
    """Fetches media bytes and stores them somewhere durable."""

    def store(self, session: Session, message: Message, media: InboundMedia) -> MediaDescriptor:
        ...


@dataclass(frozen=True)
class IngestResult:
    outcome: Outcome
    message: Message | None = None
    contact: Contact | None = None
    session: Session | None = None


class IngestionPipeline:
    def __init__(
        self,
        store: ArchiveStore,
        access: AccessResolver,
        sessions: SessionService,
        *,
        media_storage: MediaStorage | None = None,
        on_connected: Callable[[str], None] | None = None,
        early_ack_capacity: int = DEFAULT_EARLY_ACK_CAPACITY,
    ) -> None:
        self._store = store
        self._access = access
        self._sessions = sessions
        self._media_storage = media_storage
        self._on_connected = on_connected
        self._listeners: list[MessageListener] = []
        self._locks = KeyedLock()

        # Acks that arrived before their message: (session_id, external_id) -> ack
        self._early_acks: OrderedDict[tuple[str, str], AckState] = OrderedDict()
        self._early_ack_capacity = early_ack_capacity
        self._early_ack_lock = threading.Lock()

    def add_listener(self, listener: MessageListener) -> None:
        """Register a callback run after each newly archived message."""
        self._listeners.append(listener)

    def set_on_connected(self, callback: Callable[[str], None]) -> None:
        self._on_connected = callback

    # ── Entry point ───────────────────────────────────────

    def handle_event(self, event: GatewayEvent) -> IngestResult:
        """Process one gateway event.

        Raises:
            ValidationError: If the session is unknown, deactivated, or its
                owning admin is gone, or the event type is unknown.
        """
        session = self._resolve_session(event.source_id)

        if event.type == "message":
            return self.upsert_message(session, _expect(event, InboundMessage))
        if event.type == "ack":
            return self.apply_ack(session, _expect(event, AckUpdate))
        if event.type == "contact":
            return self.upsert_contact(session, _expect(event, ContactUpdate))
        if event.type == "connection":
            return self.apply_connection(session, _expect(event, ConnectionUpdate))
        raise ValidationError(f"unknown event type: {event.type!r}")

    def _resolve_session(self, instance_name: str) -> Session:
        session = self._store.get_session_by_instance(instance_name)
        if session is None:
            raise ValidationError("unknown session")
        if not self._access.session_is_owned(session):
            raise ValidationError("session inactive or owner deactivated")
        return session

    # ── Messages ──────────────────────────────────────────

    def upsert_message(self, session: Session, inbound: InboundMessage) -> IngestResult:
        """Archive a message, or advance the ack of the stored copy."""
        with self._locks.hold((session.id, inbound.contact_external_id)):
            # Outbound pushName is our own line's name
            contact, _ = self._store.upsert_contact(
                session.id,
                inbound.contact_external_id,
                display_name=None if inbound.from_me else inbound.push_name,
                is_group=inbound.is_group,
            )

            reply_to_id = None
            if inbound.quoted_external_id:
                quoted = self._store.get_message_by_external(
                    session.id, inbound.quoted_external_id
                )
                reply_to_id = quoted.id if quoted else None

            candidate = Message(
                id=str(uuid.uuid4()),
                session_id=session.id,
                contact_id=contact.id,
                external_id=inbound.external_id,
                message_type=inbound.message_type,
                body=inbound.body,
                direction=Direction.OUTBOUND if inbound.from_me else Direction.INBOUND,
                ack=inbound.ack if inbound.ack is not None else AckState.PENDING,
                timestamp=inbound.timestamp,
                has_media=inbound.has_media,
                reply_to_id=reply_to_id,
                raw_payload=inbound.raw,
            )
            stored, created = self._store.insert_message(candidate)

            if created:
                with self._early_ack_lock:
                    early = self._early_acks.pop((session.id, stored.external_id), None)
                if early is not None:
                    stored = self._advance_ack(stored, early)
            elif inbound.ack is not None:
                stored = self._advance_ack(stored, inbound.ack)

            self._store.advance_watermark(session.id, stored.timestamp)

            if created:
                stored = self._record_media(session, stored, inbound.media)
                self._notify(stored)
                logger.info(
                    "message archived",
                    extra={
                        "extra_fields": safe_log_context(
                            session_id=session.id,
                            message_ref=id_prefix(stored.external_id),
                            message_type=stored.message_type,
                            direction=stored.direction.value,
                        )
                    },
                )
                return IngestResult("created", message=stored, contact=contact)

            return IngestResult("duplicate", message=stored, contact=contact)

    def _advance_ack(self, message: Message, ack: AckState) -> Message:
        if self._store.advance_ack(message.id, ack):
            return _with_ack(message, ack)
        if ack < message.ack:
            logger.info(
                "stale ack discarded",
                extra={
                    "extra_fields": safe_log_context(
                        message_ref=id_prefix(message.external_id),
                        current=message.ack.label,
                        received=ack.label,
                    )
                },
            )
        return message

    def _record_media(
        self, session: Session, message: Message, media: InboundMedia | None
    ) -> Message:
        if media is None:
            return message

        if self._media_storage is None:
            descriptor = MediaDescriptor(
                id=str(uuid.uuid4()),
                message_id=message.id,
                location=media.url,
                mimetype=media.mimetype,
                filename=media.filename,
            )
        else:
            try:
                descriptor = self._media_storage.store(session, message, media)
            except Exception as e:
                # The message stays archived; the failure is kept on the descriptor
                logger.warning(
                    "media storage failed",
                    extra={
                        "extra_fields": safe_log_context(
                            message_ref=id_prefix(message.external_id),
                            error_type=type(e).__name__,
                        )
                    },
                )
                descriptor = MediaDescriptor(
                    id=str(uuid.uuid4()),
                    message_id=message.id,
                    location=media.url,
                    mimetype=media.mimetype,
                    filename=media.filename,
                    uploaded=False,
                    error=str(e),
                )

        self._store.attach_media(descriptor)
        return _with_media(message, descriptor)

    def _notify(self, message: Message) -> None:
        for listener in self._listeners:
            try:
                listener(message)
            except Exception:
                logger.exception(
                    "message listener failed",
                    extra={
                        "extra_fields": safe_log_context(
                            message_ref=id_prefix(message.external_id)
                        )
                    },
                )

    # ── Acks ──────────────────────────────────────────────

    def apply_ack(self, session: Session, update: AckUpdate) -> IngestResult:
        """Advance a message's ack; hold it if the message is not archived yet."""
        key = (session.id, update.external_id)
        with self._early_ack_lock:
            message = self._store.get_message_by_external(session.id, update.external_id)
            if message is None:
                previous = self._early_acks.pop(key, None)
                self._early_acks[key] = max(update.ack, previous) if previous is not None else update.ack
                while len(self._early_acks) > self._early_ack_capacity:
                    dropped, _ = self._early_acks.popitem(last=False)
                    logger.warning(
                        "early ack evicted",
                        extra={
                            "extra_fields": safe_log_context(
                                session_id=dropped[0], message_ref=id_prefix(dropped[1])
                            )
                        },
                    )
                return IngestResult("ack_deferred")

        advanced = self._advance_ack(message, update.ack)
        if advanced is not message:
            return IngestResult("ack_applied", message=advanced)
        return IngestResult("ack_stale", message=message)

    def pending_ack_count(self) -> int:
        with self._early_ack_lock:
            return len(self._early_acks)

    # ── Contacts & connectivity ───────────────────────────

    def upsert_contact(self, session: Session, update: ContactUpdate) -> IngestResult:
        with self._locks.hold((session.id, update.contact_external_id)):
            contact, created = self._store.upsert_contact(
                session.id,
                update.contact_external_id,
                display_name=update.display_name,
                is_group=update.is_group,
                avatar_url=update.avatar_url,
            )
        logger.info(
            "contact upserted",
            extra={
                "extra_fields": safe_log_context(session_id=session.id, created=created)
            },
        )
        return IngestResult("contact_upserted", contact=contact)

    def apply_connection(self, session: Session, update: ConnectionUpdate) -> IngestResult:
        updated, became_connected = self._sessions.apply_connection_update(session, update)
        if became_connected and self._on_connected is not None:
            self._on_connected(updated.id)
        return IngestResult("status_updated", session=updated)


def _expect(event: GatewayEvent, kind: type):
    if not isinstance(event.payload, kind):
        raise ValidationError(
            f"{event.type} event carries {type(event.payload).__name__}"
        )
    return event.payload


def _with_ack(message: Message, ack: AckState) -> Message:
    return replace(message, ack=ack)


def _with_media(message: Message, descriptor: MediaDescriptor) -> Message:
    return replace(message, media=descriptor)
