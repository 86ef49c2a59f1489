"""Archive store contract.

The engine needs only a handful of atomic primitives from storage:
insert-if-absent by unique key, conditional (monotonic) updates, and
create-if-idle for sync runs. Two backends implement this contract:
InMemoryStore (tests, single-process dev) and PostgresStore (psycopg2).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from wharchive.domain.models import (
    AckState,
    Assignment,
    ChatSummary,
    Contact,
    MediaDescriptor,
    Message,
    Principal,
    Session,
    SessionStats,
    SessionStatus,
    SyncRun,
    SyncRunStatus,
    Team,
)


class ArchiveStore(Protocol):
    """Persistence contract used by the domain components."""

    # ── Principals & teams ────────────────────────────────

    def add_principal(self, principal: Principal) -> Principal:
        """Insert a principal. Raises ConflictError on duplicate id/username."""
        ...

    def get_principal(self, principal_id: str) -> Principal | None: ...

    def list_principals_by_owner(self, owner_id: str) -> list[Principal]: ...

    def set_principal_active(self, principal_id: str, active: bool) -> None: ...

    def add_team(self, team: Team) -> Team: ...

    def get_team(self, team_id: str) -> Team | None: ...

    def list_teams_by_admin(self, admin_id: str) -> list[Team]: ...

    def list_teams_for_member(self, principal_id: str) -> list[Team]: ...

    def add_team_member(self, team_id: str, principal_id: str) -> bool:
        """Add membership. Returns False if it already existed."""
        ...

    # ── Sessions & assignments ────────────────────────────

    def add_session(self, session: Session) -> Session:
        """Insert a session. Raises ConflictError on duplicate instance_name."""
        ...

    def get_session(self, session_id: str) -> Session | None: ...

    def get_session_by_instance(self, instance_name: str) -> Session | None: ...

    def list_sessions(self, admin_id: str | None = None) -> list[Session]: ...

    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        connected_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session | None: ...

    def set_session_active(self, session_id: str, active: bool) -> None: ...

    def advance_watermark(self, session_id: str, timestamp: datetime) -> bool:
        """Set last_message_at = max(current, timestamp). True if it moved."""
        ...

    def add_assignment(self, assignment: Assignment) -> Assignment:
        """Insert an assignment. Raises ConflictError on duplicate target."""
        ...

    def list_assignments(self, session_id: str) -> list[Assignment]: ...

    # ── Contacts & messages ───────────────────────────────

    def upsert_contact(
        self,
        session_id: str,
        external_id: str,
        *,
        display_name: str | None = None,
        is_group: bool = False,
        avatar_url: str | None = None,
    ) -> tuple[Contact, bool]:
        """Resolve or create a contact by (session_id, external_id).

        Name and avatar are updated only when provided and different.
        Returns (contact, created).
        """
        ...

    def get_contact(self, contact_id: str) -> Contact | None: ...

    def insert_message(self, message: Message) -> tuple[Message, bool]:
        """Insert unless (session_id, external_id) exists.

        Returns (stored message, created). On conflict the stored row is
        returned unchanged.
        """
        ...

    def get_message_by_external(
        self, session_id: str, external_id: str
    ) -> Message | None: ...

    def advance_ack(self, message_id: str, ack: AckState) -> bool:
        """Set ack only if strictly later than the stored state."""
        ...

    def attach_media(self, descriptor: MediaDescriptor) -> None: ...

    def list_messages(
        self, session_id: str, contact_id: str, limit: int, offset: int
    ) -> list[Message]:
        """Messages of one thread, newest first."""
        ...

    def mark_read(self, session_id: str, contact_id: str) -> int:
        """Raise inbound messages below READ to READ. Returns rows changed."""
        ...

    def chat_summaries(self, session_id: str) -> list[ChatSummary]:
        """One summary per contact, most recent message first."""
        ...

    def search_messages(
        self, session_id: str, query: str, limit: int
    ) -> list[Message]: ...

    def session_stats(self, session_id: str, since: datetime) -> SessionStats: ...

    # ── Sync runs ─────────────────────────────────────────

    def create_sync_run(self, run: SyncRun) -> SyncRun | None:
        """Insert a started run unless one is already active for the session."""
        ...

    def update_sync_progress(self, run_id: str, messages_synced: int) -> bool:
        """Record progress and renew the run's lease (heartbeat_at = now).

        Returns False if the run is no longer started.
        """
        ...

    def finish_sync_run(
        self,
        run_id: str,
        status: SyncRunStatus,
        *,
        messages_synced: int,
        error: str | None,
        completed_at: datetime,
    ) -> SyncRun: ...

    def get_sync_run(self, run_id: str) -> SyncRun | None: ...

    def latest_sync_run(self, session_id: str) -> SyncRun | None: ...

    def delete_sync_runs_before(self, cutoff: datetime) -> int:
        """Delete finished runs started before cutoff. Returns count."""
        ...

    def fail_stale_runs(
        self,
        error: str,
        completed_at: datetime,
        heartbeat_before: datetime,
        session_id: str | None = None,
    ) -> int:
        """Fail started runs whose last heartbeat is older than heartbeat_before.

        Optionally limited to one session. Returns count.
        """
        ...
