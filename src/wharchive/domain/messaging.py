"""Outbound text messages sent from an archived session.

The send goes through the gateway first; the gateway's record of the sent
message is then archived like any other, so the webhook echo of the same
message lands as a duplicate.
"""

from __future__ import annotations

from wharchive.domain.access import AccessResolver
from wharchive.domain.errors import NotFoundError, ValidationError
from wharchive.domain.ingestion import IngestionPipeline
from wharchive.domain.models import Action, Message, Principal, SessionStatus
from wharchive.infra.store import ArchiveStore
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context
from wharchive.whatsapp.gateway_client import MessageGateway

logger = get_logger(__name__)

MAX_TEXT_LENGTH = 4096


class MessageSender:
    def __init__(
        self,
        store: ArchiveStore,
        access: AccessResolver,
        pipeline: IngestionPipeline,
        gateway: MessageGateway,
    ) -> None:
        self._store = store
        self._access = access
        self._pipeline = pipeline
        self._gateway = gateway

    def send_message(
        self, principal: Principal, session_id: str, contact_id: str, body: str
    ) -> Message:
        """Send body to a contact of the session and archive it as outbound.

        Raises:
            AuthorizationError: If principal may not send on the session.
            NotFoundError: If the session or contact does not exist.
            ValidationError: If the body is empty or too long, or the session
                is inactive or not connected.
            TransientGatewayError / GatewayRequestError: If the gateway fails.
        """
        self._access.require(principal, session_id, Action.SEND)

        text = (body or "").strip()
        if not text:
            raise ValidationError("message body is required")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(f"message body exceeds {MAX_TEXT_LENGTH} characters")

        session = self._store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        if not self._access.session_is_owned(session):
            raise ValidationError("session inactive or owner deactivated")
        if session.status != SessionStatus.CONNECTED:
            raise ValidationError("session is not connected")

        contact = self._store.get_contact(contact_id)
        if contact is None or contact.session_id != session.id:
            raise NotFoundError(f"contact {contact_id} not found in session")

        domain = "g.us" if contact.is_group else "s.whatsapp.net"
        sent = self._gateway.send_text(
            session.instance_name, f"{contact.external_id}@{domain}", text
        )
        result = self._pipeline.upsert_message(session, sent)

        logger.info(
            "outbound message archived",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    contact_id=contact.id,
                    principal_id=principal.id,
                    outcome=result.outcome,
                )
            },
        )
        return result.message
