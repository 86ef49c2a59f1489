"""In-process archive store.

Backs tests and single-process development (STORE_BACKEND=memory). All
primitives run under one re-entrant lock, which gives them the same
atomicity the Postgres store gets from unique indexes and conditional
UPDATEs.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any

from wharchive.domain.errors import ConflictError, NotFoundError
from wharchive.domain.models import (
    AckState,
    Assignment,
    ChatSummary,
    Contact,
    Direction,
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
from wharchive.infra.time import utc_now


class InMemoryStore:
    """Dict-backed implementation of ArchiveStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._principals: dict[str, Principal] = {}
        self._teams: dict[str, Team] = {}
        self._sessions: dict[str, Session] = {}
        self._assignments: dict[str, Assignment] = {}
        self._contacts: dict[str, Contact] = {}
        self._contact_keys: dict[tuple[str, str], str] = {}
        self._messages: dict[str, Message] = {}
        self._message_keys: dict[tuple[str, str], str] = {}
        # Insertion sequence, used as a stable tie-break for equal timestamps
        self._message_seq: dict[str, int] = {}
        self._sync_runs: dict[str, SyncRun] = {}

    # ── Principals & teams ────────────────────────────────

    def add_principal(self, principal: Principal) -> Principal:
        with self._lock:
            if principal.id in self._principals:
                raise ConflictError(f"principal {principal.id} already exists")
            if any(p.username == principal.username for p in self._principals.values()):
                raise ConflictError(f"username {principal.username!r} already taken")
            stored = replace(principal, created_at=principal.created_at or utc_now())
            self._principals[stored.id] = stored
            return stored

    def get_principal(self, principal_id: str) -> Principal | None:
        with self._lock:
            return self._principals.get(principal_id)

    def list_principals_by_owner(self, owner_id: str) -> list[Principal]:
        with self._lock:
            return [p for p in self._principals.values() if p.owner_id == owner_id]

    def set_principal_active(self, principal_id: str, active: bool) -> None:
        with self._lock:
            principal = self._principals.get(principal_id)
            if principal is None:
                raise NotFoundError(f"principal {principal_id} not found")
            self._principals[principal_id] = replace(principal, is_active=active)

    def add_team(self, team: Team) -> Team:
        with self._lock:
            if team.id in self._teams:
                raise ConflictError(f"team {team.id} already exists")
            stored = replace(team, created_at=team.created_at or utc_now())
            self._teams[stored.id] = stored
            return stored

    def get_team(self, team_id: str) -> Team | None:
        with self._lock:
            return self._teams.get(team_id)

    def list_teams_by_admin(self, admin_id: str) -> list[Team]:
        with self._lock:
            return [t for t in self._teams.values() if t.admin_id == admin_id]

    def list_teams_for_member(self, principal_id: str) -> list[Team]:
        with self._lock:
            return [t for t in self._teams.values() if principal_id in t.member_ids]

    def add_team_member(self, team_id: str, principal_id: str) -> bool:
        with self._lock:
            team = self._teams.get(team_id)
            if team is None:
                raise NotFoundError(f"team {team_id} not found")
            if principal_id in team.member_ids:
                return False
            self._teams[team_id] = replace(
                team, member_ids=team.member_ids | {principal_id}
            )
            return True

    # ── Sessions & assignments ────────────────────────────

    def add_session(self, session: Session) -> Session:
        with self._lock:
            if session.id in self._sessions:
                raise ConflictError(f"session {session.id} already exists")
            if self._find_session_by_instance(session.instance_name) is not None:
                raise ConflictError(
                    f"instance name {session.instance_name!r} already exists"
                )
            stored = replace(session, created_at=session.created_at or utc_now())
            self._sessions[stored.id] = stored
            return stored

    def _find_session_by_instance(self, instance_name: str) -> Session | None:
        for session in self._sessions.values():
            if session.instance_name == instance_name:
                return session
        return None

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def get_session_by_instance(self, instance_name: str) -> Session | None:
        with self._lock:
            return self._find_session_by_instance(instance_name)

    def list_sessions(self, admin_id: str | None = None) -> list[Session]:
        with self._lock:
            return [
                s
                for s in self._sessions.values()
                if admin_id is None or s.admin_id == admin_id
            ]

    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        connected_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            changes: dict[str, Any] = {"status": status}
            if connected_at is not None:
                changes["last_connected_at"] = connected_at
            if metadata is not None:
                changes["gateway_metadata"] = dict(metadata)
            updated = replace(session, **changes)
            self._sessions[session_id] = updated
            return updated

    def set_session_active(self, session_id: str, active: bool) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"session {session_id} not found")
            self._sessions[session_id] = replace(session, is_active=active)

    def advance_watermark(self, session_id: str, timestamp: datetime) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.last_message_at is not None and session.last_message_at >= timestamp:
                return False
            self._sessions[session_id] = replace(session, last_message_at=timestamp)
            return True

    def add_assignment(self, assignment: Assignment) -> Assignment:
        with self._lock:
            for existing in self._assignments.values():
                if existing.session_id != assignment.session_id:
                    continue
                if (
                    existing.member_id == assignment.member_id
                    and existing.team_id == assignment.team_id
                ):
                    raise ConflictError("session already assigned to this target")
            stored = replace(assignment, assigned_at=assignment.assigned_at or utc_now())
            self._assignments[stored.id] = stored
            return stored

    def list_assignments(self, session_id: str) -> list[Assignment]:
        with self._lock:
            return [a for a in self._assignments.values() if a.session_id == session_id]

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
        with self._lock:
            key = (session_id, external_id)
            contact_id = self._contact_keys.get(key)
            if contact_id is None:
                now = utc_now()
                contact = Contact(
                    id=str(uuid.uuid4()),
                    session_id=session_id,
                    external_id=external_id,
                    display_name=display_name,
                    is_group=is_group,
                    avatar_url=avatar_url,
                    created_at=now,
                    updated_at=now,
                )
                self._contacts[contact.id] = contact
                self._contact_keys[key] = contact.id
                return contact, True

            contact = self._contacts[contact_id]
            changes: dict[str, Any] = {}
            if display_name and display_name != contact.display_name:
                changes["display_name"] = display_name
            if avatar_url and avatar_url != contact.avatar_url:
                changes["avatar_url"] = avatar_url
            if changes:
                contact = replace(contact, updated_at=utc_now(), **changes)
                self._contacts[contact_id] = contact
            return contact, False

    def get_contact(self, contact_id: str) -> Contact | None:
        with self._lock:
            return self._contacts.get(contact_id)

    def insert_message(self, message: Message) -> tuple[Message, bool]:
        with self._lock:
            key = (message.session_id, message.external_id)
            existing_id = self._message_keys.get(key)
            if existing_id is not None:
                return self._messages[existing_id], False
            stored = replace(message, created_at=utc_now())
            self._messages[stored.id] = stored
            self._message_keys[key] = stored.id
            self._message_seq[stored.id] = len(self._message_seq)
            return stored, True

    def get_message_by_external(
        self, session_id: str, external_id: str
    ) -> Message | None:
        with self._lock:
            message_id = self._message_keys.get((session_id, external_id))
            return self._messages.get(message_id) if message_id else None

    def advance_ack(self, message_id: str, ack: AckState) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None or ack <= message.ack:
                return False
            self._messages[message_id] = replace(message, ack=ack)
            return True

    def attach_media(self, descriptor: MediaDescriptor) -> None:
        with self._lock:
            message = self._messages.get(descriptor.message_id)
            if message is None:
                raise NotFoundError(f"message {descriptor.message_id} not found")
            self._messages[message.id] = replace(message, media=descriptor)

    def _thread(self, session_id: str, contact_id: str) -> list[Message]:
        return [
            m
            for m in self._messages.values()
            if m.session_id == session_id and m.contact_id == contact_id
        ]

    def _newest_first(self, messages: list[Message]) -> list[Message]:
        return sorted(
            messages,
            key=lambda m: (m.timestamp, self._message_seq[m.id]),
            reverse=True,
        )

    def list_messages(
        self, session_id: str, contact_id: str, limit: int, offset: int
    ) -> list[Message]:
        with self._lock:
            ordered = self._newest_first(self._thread(session_id, contact_id))
            return ordered[offset : offset + limit]

    def mark_read(self, session_id: str, contact_id: str) -> int:
        with self._lock:
            changed = 0
            for message in self._thread(session_id, contact_id):
                if _is_unread(message):
                    self._messages[message.id] = replace(message, ack=AckState.READ)
                    changed += 1
            return changed

    def chat_summaries(self, session_id: str) -> list[ChatSummary]:
        with self._lock:
            summaries = []
            for contact in self._contacts.values():
                if contact.session_id != session_id:
                    continue
                thread = self._newest_first(self._thread(session_id, contact.id))
                summaries.append(
                    ChatSummary(
                        contact=contact,
                        last_message=thread[0] if thread else None,
                        unread_count=sum(1 for m in thread if _is_unread(m)),
                    )
                )

        # Most recent first; contacts without messages last
        with_messages = [s for s in summaries if s.last_message is not None]
        without = [s for s in summaries if s.last_message is None]
        with_messages.sort(key=lambda s: s.last_message.timestamp, reverse=True)
        return with_messages + without

    def search_messages(
        self, session_id: str, query: str, limit: int
    ) -> list[Message]:
        needle = query.casefold()
        with self._lock:
            hits = [
                m
                for m in self._messages.values()
                if m.session_id == session_id and needle in (m.body or "").casefold()
            ]
            return self._newest_first(hits)[:limit]

    def session_stats(self, session_id: str, since: datetime) -> SessionStats:
        with self._lock:
            messages = [m for m in self._messages.values() if m.session_id == session_id]
            return SessionStats(
                total_messages=len(messages),
                total_contacts=len({m.contact_id for m in messages}),
                unread_messages=sum(1 for m in messages if _is_unread(m)),
                messages_today=sum(1 for m in messages if m.timestamp >= since),
                media_messages=sum(1 for m in messages if m.has_media),
            )

    # ── Sync runs ─────────────────────────────────────────

    def create_sync_run(self, run: SyncRun) -> SyncRun | None:
        with self._lock:
            for existing in self._sync_runs.values():
                if (
                    existing.session_id == run.session_id
                    and existing.status == SyncRunStatus.STARTED
                ):
                    return None
            now = utc_now()
            stored = replace(
                run,
                status=SyncRunStatus.STARTED,
                started_at=run.started_at or now,
                heartbeat_at=run.heartbeat_at or now,
            )
            self._sync_runs[stored.id] = stored
            return stored

    def update_sync_progress(self, run_id: str, messages_synced: int) -> bool:
        with self._lock:
            run = self._sync_runs.get(run_id)
            if run is None or run.status != SyncRunStatus.STARTED:
                return False
            self._sync_runs[run_id] = replace(
                run, messages_synced=messages_synced, heartbeat_at=utc_now()
            )
            return True

    def finish_sync_run(
        self,
        run_id: str,
        status: SyncRunStatus,
        *,
        messages_synced: int,
        error: str | None,
        completed_at: datetime,
    ) -> SyncRun:
        with self._lock:
            run = self._sync_runs.get(run_id)
            if run is None:
                raise NotFoundError(f"sync run {run_id} not found")
            finished = replace(
                run,
                status=status,
                messages_synced=messages_synced,
                error=error,
                completed_at=completed_at,
            )
            self._sync_runs[run_id] = finished
            return finished

    def get_sync_run(self, run_id: str) -> SyncRun | None:
        with self._lock:
            return self._sync_runs.get(run_id)

    def latest_sync_run(self, session_id: str) -> SyncRun | None:
        with self._lock:
            runs = [r for r in self._sync_runs.values() if r.session_id == session_id]
            if not runs:
                return None
            return max(runs, key=lambda r: r.started_at)

    def fail_stale_runs(
        self,
        error: str,
        completed_at: datetime,
        heartbeat_before: datetime,
        session_id: str | None = None,
    ) -> int:
        with self._lock:
            started = [
                r
                for r in self._sync_runs.values()
                if r.status == SyncRunStatus.STARTED
                and r.heartbeat_at < heartbeat_before
                and (session_id is None or r.session_id == session_id)
            ]
            for run in started:
                self._sync_runs[run.id] = replace(
                    run,
                    status=SyncRunStatus.FAILED,
                    error=error,
                    completed_at=completed_at,
                )
            return len(started)

    def delete_sync_runs_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                r.id
                for r in self._sync_runs.values()
                if r.status != SyncRunStatus.STARTED and r.started_at < cutoff
            ]
            for run_id in stale:
                del self._sync_runs[run_id]
            return len(stale)


def _is_unread(message: Message) -> bool:
    return message.direction == Direction.INBOUND and message.ack < AckState.READ
