"""Chat aggregation view - conversation lists and message threads.

Every call is authorized through the AccessResolver first. A denied call
raises AuthorizationError instead of returning an empty result, so "no
access" is never confused with "no data".
"""

from __future__ import annotations

from wharchive.domain.access import AccessResolver
from wharchive.domain.errors import NotFoundError, ValidationError
from wharchive.domain.models import (
    Action,
    ChatSummary,
    Contact,
    Message,
    Principal,
    SessionStats,
)
from wharchive.infra.store import ArchiveStore
from wharchive.infra.time import utc_now
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class ChatAggregationView:
    def __init__(self, store: ArchiveStore, access: AccessResolver) -> None:
        self._store = store
        self._access = access

    def list_conversations(self, principal: Principal, session_id: str) -> list[ChatSummary]:
        """One summary per contact, most recent message first."""
        self._access.require(principal, session_id, Action.READ)
        return self._store.chat_summaries(session_id)

    def get_messages(
        self,
        principal: Principal,
        session_id: str,
        contact_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[Message]:
        """Messages of one thread, newest first. limit is clamped to 1..200."""
        self._access.require(principal, session_id, Action.READ)
        contact = self._contact(session_id, contact_id)
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        return self._store.list_messages(session_id, contact.id, limit, offset)

    def mark_read(self, principal: Principal, session_id: str, contact_id: str) -> int:
        """Flip unread inbound messages of a thread to read. Returns count changed."""
        self._access.require(principal, session_id, Action.READ)
        contact = self._contact(session_id, contact_id)
        changed = self._store.mark_read(session_id, contact.id)
        logger.info(
            "thread marked read",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session_id, contact_id=contact.id, changed=changed
                )
            },
        )
        return changed

    def search_messages(
        self,
        principal: Principal,
        session_id: str,
        query: str,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Message]:
        """Case-insensitive substring search over message bodies."""
        self._access.require(principal, session_id, Action.READ)
        query = (query or "").strip()
        if not query:
            raise ValidationError("search query is required")
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        return self._store.search_messages(session_id, query, limit)

    def session_stats(self, principal: Principal, session_id: str) -> SessionStats:
        self._access.require(principal, session_id, Action.READ)
        start_of_day = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        return self._store.session_stats(session_id, start_of_day)

    def _contact(self, session_id: str, contact_id: str) -> Contact:
        contact = self._store.get_contact(contact_id)
        if contact is None or contact.session_id != session_id:
            raise NotFoundError(f"contact {contact_id} not found in session")
        return contact
