"""Access resolution - the single authorization choke point.

Every read/write path (message fetch, send, mark read, search, sync trigger) asks
can_access() or require(); no other component performs its own permission
checks. Resolution is side-effect free and synchronous.

Rules, evaluated in order, first match wins:

1. top_admin -> allow
2. owning admin of the session -> allow
3. any other admin -> deny (admins never reach sibling sub-trees)
4. direct assignment naming the principal -> allow
5. team assignment whose team contains the principal -> allow
6. otherwise -> deny

Inactive principals are denied before rule 1. The rule set does not vary by
action; the action only shows up in the denial log.
"""

from __future__ import annotations

from wharchive.domain.errors import AuthorizationError
from wharchive.domain.models import Action, Principal, Role, Session
from wharchive.infra.store import ArchiveStore
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context

logger = get_logger(__name__)


class AccessResolver:
    def __init__(self, store: ArchiveStore) -> None:
        self._store = store

    def can_access(self, principal: Principal, session_id: str, action: Action) -> bool:
        # Re-read so a deactivation takes effect immediately
        current = self._store.get_principal(principal.id)
        if current is None or not current.is_active:
            return False

        if current.role == Role.TOP_ADMIN:
            return True

        session = self._store.get_session(session_id)
        if session is None:
            return False

        if current.role == Role.ADMIN:
            return session.admin_id == current.id

        assignments = self._store.list_assignments(session.id)
        if any(a.member_id == current.id for a in assignments):
            return True

        team_ids = {a.team_id for a in assignments if a.team_id is not None}
        for team_id in team_ids:
            team = self._store.get_team(team_id)
            if team is not None and team.is_active and current.id in team.member_ids:
                return True

        return False

    def require(self, principal: Principal, session_id: str, action: Action) -> None:
        """Raise AuthorizationError unless can_access() allows."""
        if self.can_access(principal, session_id, action):
            return
        logger.warning(
            "access denied",
            extra={
                "extra_fields": safe_log_context(
                    principal_id=principal.id,
                    session_id=session_id,
                    action=action.value,
                )
            },
        )
        raise AuthorizationError(f"{action.value} not allowed on session {session_id}")

    def accessible_session_ids(self, principal: Principal) -> set[str] | None:
        """Sessions the principal may read. None means all (top_admin)."""
        current = self._store.get_principal(principal.id)
        if current is None or not current.is_active:
            return set()
        if current.role == Role.TOP_ADMIN:
            return None
        if current.role == Role.ADMIN:
            return {s.id for s in self._store.list_sessions(admin_id=current.id)}
        return {
            s.id
            for s in self._store.list_sessions()
            if self.can_access(current, s.id, Action.READ)
        }

    def session_is_owned(self, session: Session) -> bool:
        """True if the session is active and its owning admin is active."""
        if not session.is_active:
            return False
        owner = self._store.get_principal(session.admin_id)
        return owner is not None and owner.is_active and owner.role == Role.ADMIN
