"""Session lifecycle - creation, connectivity, deactivation, assignment.

A session is one WhatsApp line (a gateway instance) owned by exactly one
admin. Members reach it only through assignments.
"""

from __future__ import annotations

import re
import uuid
from typing import Callable

from wharchive.domain.access import AccessResolver
from wharchive.domain.errors import (
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from wharchive.domain.hierarchy import HierarchyStore
from wharchive.domain.models import (
    Action,
    Assignment,
    Principal,
    Role,
    Session,
    SessionStatus,
)
from wharchive.infra.store import ArchiveStore
from wharchive.infra.time import utc_now
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context
from wharchive.whatsapp.models import ConnectionUpdate

logger = get_logger(__name__)

INSTANCE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class SessionService:
    def __init__(
        self,
        store: ArchiveStore,
        hierarchy: HierarchyStore,
        access: AccessResolver,
        on_deactivate: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._hierarchy = hierarchy
        self._access = access
        self._on_deactivate = on_deactivate

    def set_deactivation_hook(self, hook: Callable[[str], None]) -> None:
        self._on_deactivate = hook

    def get(self, session_id: str) -> Session:
        session = self._store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        return session

    def list_sessions(self, principal: Principal) -> list[Session]:
        """Sessions the principal can read, newest first."""
        allowed = self._access.accessible_session_ids(principal)
        sessions = [
            s
            for s in self._store.list_sessions()
            if allowed is None or s.id in allowed
        ]
        return sorted(sessions, key=lambda s: s.created_at or utc_now(), reverse=True)

    def create_session(self, admin: Principal, instance_name: str) -> Session:
        """Register a gateway instance as a session owned by admin.

        Raises:
            AuthorizationError: If admin is not an active admin.
            ValidationError: If instance_name is not [a-zA-Z0-9_-]+.
            ConflictError: If the instance name is taken.
        """
        if admin.role != Role.ADMIN or not admin.is_active:
            raise AuthorizationError("only an active admin can create sessions")
        if not instance_name or not INSTANCE_NAME_PATTERN.match(instance_name):
            raise ValidationError(
                "instance name may contain only letters, digits, '_' and '-'"
            )

        session = self._store.add_session(
            Session(id=str(uuid.uuid4()), instance_name=instance_name, admin_id=admin.id)
        )
        logger.info(
            "session created",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id, instance=instance_name, admin_id=admin.id
                )
            },
        )
        return session

    def apply_connection_update(
        self, session: Session, update: ConnectionUpdate
    ) -> tuple[Session, bool]:
        """Map a gateway connectivity change onto the session.

        Returns:
            (updated session, became_connected). became_connected is True only
            on a transition into CONNECTED.
        """
        now = utc_now()
        metadata = dict(session.gateway_metadata)
        metadata.update(
            {
                "evolution_state": update.state,
                "status_reason": update.status_reason,
                "last_update": now.isoformat(),
            }
        )
        connected = update.status == SessionStatus.CONNECTED
        updated = self._store.update_session_status(
            session.id,
            update.status,
            connected_at=now if connected else None,
            metadata=metadata,
        )
        if updated is None:
            raise NotFoundError(f"session {session.id} not found")

        became_connected = connected and session.status != SessionStatus.CONNECTED
        logger.info(
            "session status updated",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    previous=session.status.value,
                    status=update.status.value,
                )
            },
        )
        return updated, became_connected

    def deactivate_session(self, actor: Principal, session_id: str) -> Session:
        """Deactivate a session and cancel any sync running on it."""
        session = self.get(session_id)
        self._access.require(actor, session.id, Action.MANAGE)
        if actor.role == Role.MEMBER:
            raise AuthorizationError("members cannot deactivate sessions")

        self._store.set_session_active(session.id, False)
        logger.info(
            "session deactivated",
            extra={
                "extra_fields": safe_log_context(session_id=session.id, actor_id=actor.id)
            },
        )
        if self._on_deactivate is not None:
            self._on_deactivate(session.id)
        return self.get(session.id)

    def assign_session(
        self,
        actor: Principal,
        session_id: str,
        *,
        member_id: str | None = None,
        team_id: str | None = None,
    ) -> Assignment:
        """Grant a member, or every member of a team, access to a session.

        Exactly one of member_id / team_id must be given. The target must
        belong to the session's owning admin.

        Raises:
            DataIntegrityError: If both or neither target is given.
            AuthorizationError: If actor may not manage the session, or the
                target is outside the owning admin's hierarchy.
            ConflictError: If the same target is already assigned.
        """
        session = self.get(session_id)
        self._access.require(actor, session.id, Action.MANAGE)
        if actor.role == Role.MEMBER:
            raise AuthorizationError("members cannot assign sessions")

        assignment = Assignment(
            id=str(uuid.uuid4()),
            session_id=session.id,
            assigned_by=actor.id,
            member_id=member_id,
            team_id=team_id,
        )

        if member_id is not None:
            member = self._hierarchy.get(member_id)
            if member.role != Role.MEMBER:
                raise ValidationError("only members can be assigned directly")
            reachable = {p.id for p in self._hierarchy.descendants(session.admin_id)}
            if member.id not in reachable:
                raise AuthorizationError("member is outside the session owner's hierarchy")
        else:
            team = self._store.get_team(team_id)
            if team is None:
                raise NotFoundError(f"team {team_id} not found")
            if team.admin_id != session.admin_id:
                raise AuthorizationError("team belongs to another admin")

        stored = self._store.add_assignment(assignment)
        logger.info(
            "session assigned",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    member_id=member_id,
                    team_id=team_id,
                )
            },
        )
        return stored
