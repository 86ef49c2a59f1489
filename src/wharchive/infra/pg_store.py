"""PostgreSQL archive store.

Uses raw SQL with psycopg2 (no ORM). Every primitive is a single
statement, so atomicity comes from the schema:

- messages/contacts: UNIQUE (session_id, external_id) + ON CONFLICT
- ack and watermark: conditional UPDATE (... WHERE ack < %s)
- sync single-flight: partial unique index on sync_runs(session_id)
  WHERE status = 'started'
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from psycopg2.extras import Json

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
    Role,
    Session,
    SessionStats,
    SessionStatus,
    SyncKind,
    SyncRun,
    SyncRunStatus,
    Team,
)
from wharchive.infra.db import txn

_PRINCIPAL_COLUMNS = "id, role, owner_id, username, full_name, is_active, created_at"

_TEAM_SELECT = """
    SELECT t.id, t.admin_id, t.name, t.is_active, t.created_at,
           COALESCE(
               array_agg(tm.principal_id::text) FILTER (WHERE tm.principal_id IS NOT NULL),
               '{}'
           )
    FROM teams t
    LEFT JOIN team_members tm ON tm.team_id = t.id
"""

_SESSION_COLUMNS = (
    "id, instance_name, admin_id, status, last_message_at, is_active, "
    "last_connected_at, gateway_metadata, created_at"
)

_CONTACT_COLUMNS = (
    "id, session_id, external_id, display_name, is_group, avatar_url, "
    "created_at, updated_at"
)

_MESSAGE_COLUMNS = """
    m.id, m.session_id, m.contact_id, m.external_id, m.message_type, m.body,
    m.direction, m.ack, m.ts, m.has_media, m.reply_to_id, m.raw_payload,
    m.created_at,
    mf.id AS media_id, mf.location AS media_location,
    mf.mimetype AS media_mimetype, mf.filename AS media_filename,
    mf.uploaded AS media_uploaded, mf.error AS media_error
"""

_MESSAGE_FROM = "FROM messages m LEFT JOIN media_files mf ON mf.message_id = m.id"

_SYNC_RUN_COLUMNS = (
    "id, session_id, kind, window_from, window_to, status, messages_synced, "
    "error, started_at, completed_at, worker_id, heartbeat_at"
)


def _is_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _str(value: Any) -> str | None:
    return str(value) if value is not None else None


# ── Row mappers ───────────────────────────────────────────


def _principal(row: tuple) -> Principal:
    return Principal(
        id=str(row[0]),
        role=Role(row[1]),
        owner_id=_str(row[2]),
        username=row[3],
        full_name=row[4],
        is_active=row[5],
        created_at=row[6],
    )


def _team(row: tuple) -> Team:
    return Team(
        id=str(row[0]),
        admin_id=str(row[1]),
        name=row[2],
        is_active=row[3],
        created_at=row[4],
        member_ids=frozenset(row[5] or ()),
    )


def _session(row: tuple) -> Session:
    return Session(
        id=str(row[0]),
        instance_name=row[1],
        admin_id=str(row[2]),
        status=SessionStatus(row[3]),
        last_message_at=row[4],
        is_active=row[5],
        last_connected_at=row[6],
        gateway_metadata=row[7] or {},
        created_at=row[8],
    )


def _contact(row: tuple) -> Contact:
    return Contact(
        id=str(row[0]),
        session_id=str(row[1]),
        external_id=row[2],
        display_name=row[3],
        is_group=row[4],
        avatar_url=row[5],
        created_at=row[6],
        updated_at=row[7],
    )


def _message(row: tuple) -> Message:
    media = None
    if row[13] is not None:
        media = MediaDescriptor(
            id=str(row[13]),
            message_id=str(row[0]),
            location=row[14],
            mimetype=row[15],
            filename=row[16],
            uploaded=row[17],
            error=row[18],
        )
    return Message(
        id=str(row[0]),
        session_id=str(row[1]),
        contact_id=str(row[2]),
        external_id=row[3],
        message_type=row[4],
        body=row[5],
        direction=Direction(row[6]),
        ack=AckState(row[7]),
        timestamp=row[8],
        has_media=row[9],
        reply_to_id=_str(row[10]),
        raw_payload=row[11] or {},
        created_at=row[12],
        media=media,
    )


def _sync_run(row: tuple) -> SyncRun:
    return SyncRun(
        id=str(row[0]),
        session_id=str(row[1]),
        kind=SyncKind(row[2]),
        window_from=row[3],
        window_to=row[4],
        status=SyncRunStatus(row[5]),
        messages_synced=row[6],
        error=row[7],
        started_at=row[8],
        completed_at=row[9],
        worker_id=row[10],
        heartbeat_at=row[11],
    )


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresStore:
    """ArchiveStore backed by PostgreSQL (DATABASE_URL).

    Each call runs in its own short transaction via txn().
    """

    # ── Principals & teams ────────────────────────────────

    def add_principal(self, principal: Principal) -> Principal:
        with txn() as cur:
            cur.execute(
                f"""
                INSERT INTO principals (id, role, owner_id, username, full_name, is_active)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING {_PRINCIPAL_COLUMNS}
                """,
                (
                    principal.id,
                    principal.role.value,
                    principal.owner_id,
                    principal.username,
                    principal.full_name,
                    principal.is_active,
                ),
            )
            row = cur.fetchone()
        if row is None:
            raise ConflictError(f"principal {principal.username!r} already exists")
        return _principal(row)

    def get_principal(self, principal_id: str) -> Principal | None:
        if not _is_uuid(principal_id):
            return None
        with txn() as cur:
            cur.execute(
                f"SELECT {_PRINCIPAL_COLUMNS} FROM principals WHERE id = %s",
                (principal_id,),
            )
            row = cur.fetchone()
        return _principal(row) if row else None

    def list_principals_by_owner(self, owner_id: str) -> list[Principal]:
        with txn() as cur:
            cur.execute(
                f"""
                SELECT {_PRINCIPAL_COLUMNS} FROM principals
                WHERE owner_id = %s ORDER BY created_at
                """,
                (owner_id,),
            )
            rows = cur.fetchall()
        return [_principal(r) for r in rows]

    def set_principal_active(self, principal_id: str, active: bool) -> None:
        with txn() as cur:
            cur.execute(
                "UPDATE principals SET is_active = %s WHERE id = %s",
                (active, principal_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"principal {principal_id} not found")

    def add_team(self, team: Team) -> Team:
        with txn() as cur:
            cur.execute(
                """
                INSERT INTO teams (id, admin_id, name, is_active)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (team.id, team.admin_id, team.name, team.is_active),
            )
            if cur.rowcount == 0:
                raise ConflictError(f"team {team.id} already exists")
            for member_id in team.member_ids:
                cur.execute(
                    """
                    INSERT INTO team_members (team_id, principal_id)
                    VALUES (%s, %s) ON CONFLICT DO NOTHING
                    """,
                    (team.id, member_id),
                )
        return self.get_team(team.id)

    def get_team(self, team_id: str) -> Team | None:
        if not _is_uuid(team_id):
            return None
        with txn() as cur:
            cur.execute(f"{_TEAM_SELECT} WHERE t.id = %s GROUP BY t.id", (team_id,))
            row = cur.fetchone()
        return _team(row) if row else None

    def list_teams_by_admin(self, admin_id: str) -> list[Team]:
        with txn() as cur:
            cur.execute(
                f"{_TEAM_SELECT} WHERE t.admin_id = %s GROUP BY t.id ORDER BY t.created_at",
                (admin_id,),
            )
            rows = cur.fetchall()
        return [_team(r) for r in rows]

    def list_teams_for_member(self, principal_id: str) -> list[Team]:
        with txn() as cur:
            cur.execute(
                f"""
                {_TEAM_SELECT}
                WHERE t.id IN (
                    SELECT team_id FROM team_members WHERE principal_id = %s
                )
                GROUP BY t.id
                """,
                (principal_id,),
            )
            rows = cur.fetchall()
        return [_team(r) for r in rows]

    def add_team_member(self, team_id: str, principal_id: str) -> bool:
        with txn() as cur:
            cur.execute("SELECT 1 FROM teams WHERE id = %s", (team_id,))
            if cur.fetchone() is None:
                raise NotFoundError(f"team {team_id} not found")
            cur.execute(
                """
                INSERT INTO team_members (team_id, principal_id)
                VALUES (%s, %s) ON CONFLICT DO NOTHING
                """,
                (team_id, principal_id),
            )
            return cur.rowcount > 0

    # ── Sessions & assignments ────────────────────────────

    def add_session(self, session: Session) -> Session:
        with txn() as cur:
            cur.execute(
                f"""
                INSERT INTO sessions (id, instance_name, admin_id, status, is_active,
                                      gateway_metadata)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING {_SESSION_COLUMNS}
                """,
                (
                    session.id,
                    session.instance_name,
                    session.admin_id,
                    session.status.value,
                    session.is_active,
                    Json(session.gateway_metadata),
                ),
            )
            row = cur.fetchone()
        if row is None:
            raise ConflictError(
                f"instance name {session.instance_name!r} already exists"
            )
        return _session(row)

    def get_session(self, session_id: str) -> Session | None:
        if not _is_uuid(session_id):
            return None
        with txn() as cur:
            cur.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s", (session_id,)
            )
            row = cur.fetchone()
        return _session(row) if row else None

    def get_session_by_instance(self, instance_name: str) -> Session | None:
        with txn() as cur:
            cur.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE instance_name = %s",
                (instance_name,),
            )
            row = cur.fetchone()
        return _session(row) if row else None

    def list_sessions(self, admin_id: str | None = None) -> list[Session]:
        with txn() as cur:
            if admin_id is None:
                cur.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY created_at"
                )
            else:
                cur.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS} FROM sessions
                    WHERE admin_id = %s ORDER BY created_at
                    """,
                    (admin_id,),
                )
            rows = cur.fetchall()
        return [_session(r) for r in rows]

    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        connected_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session | None:
        with txn() as cur:
            cur.execute(
                f"""
                UPDATE sessions
                SET status = %s,
                    last_connected_at = COALESCE(%s, last_connected_at),
                    gateway_metadata = COALESCE(%s, gateway_metadata)
                WHERE id = %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (
                    status.value,
                    connected_at,
                    Json(metadata) if metadata is not None else None,
                    session_id,
                ),
            )
            row = cur.fetchone()
        return _session(row) if row else None

    def set_session_active(self, session_id: str, active: bool) -> None:
        with txn() as cur:
            cur.execute(
                "UPDATE sessions SET is_active = %s WHERE id = %s", (active, session_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"session {session_id} not found")

    def advance_watermark(self, session_id: str, timestamp: datetime) -> bool:
        with txn() as cur:
            cur.execute(
                """
                UPDATE sessions SET last_message_at = %s
                WHERE id = %s AND (last_message_at IS NULL OR last_message_at < %s)
                """,
                (timestamp, session_id, timestamp),
            )
            return cur.rowcount > 0

    def add_assignment(self, assignment: Assignment) -> Assignment:
        with txn() as cur:
            cur.execute(
                """
                INSERT INTO session_assignments
                    (id, session_id, member_id, team_id, assigned_by)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING assigned_at
                """,
                (
                    assignment.id,
                    assignment.session_id,
                    assignment.member_id,
                    assignment.team_id,
                    assignment.assigned_by,
                ),
            )
            row = cur.fetchone()
        if row is None:
            raise ConflictError("session already assigned to this target")
        return Assignment(
            id=assignment.id,
            session_id=assignment.session_id,
            assigned_by=assignment.assigned_by,
            member_id=assignment.member_id,
            team_id=assignment.team_id,
            assigned_at=row[0],
        )

    def list_assignments(self, session_id: str) -> list[Assignment]:
        with txn() as cur:
            cur.execute(
                """
                SELECT id, session_id, assigned_by, member_id, team_id, assigned_at
                FROM session_assignments WHERE session_id = %s
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        return [
            Assignment(
                id=str(r[0]),
                session_id=str(r[1]),
                assigned_by=str(r[2]),
                member_id=_str(r[3]),
                team_id=_str(r[4]),
                assigned_at=r[5],
            )
            for r in rows
        ]

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
        # xmax = 0 only on the freshly inserted row version
        with txn() as cur:
            cur.execute(
                f"""
                INSERT INTO contacts (id, session_id, external_id, display_name,
                                      is_group, avatar_url)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (session_id, external_id) DO UPDATE SET
                    display_name = COALESCE(NULLIF(EXCLUDED.display_name, ''),
                                            contacts.display_name),
                    avatar_url = COALESCE(NULLIF(EXCLUDED.avatar_url, ''),
                                          contacts.avatar_url),
                    updated_at = CASE
                        WHEN NULLIF(EXCLUDED.display_name, '') IS DISTINCT FROM NULL
                             AND EXCLUDED.display_name IS DISTINCT FROM contacts.display_name
                        THEN now()
                        WHEN NULLIF(EXCLUDED.avatar_url, '') IS DISTINCT FROM NULL
                             AND EXCLUDED.avatar_url IS DISTINCT FROM contacts.avatar_url
                        THEN now()
                        ELSE contacts.updated_at
                    END
                RETURNING {_CONTACT_COLUMNS}, (xmax = 0)
                """,
                (
                    str(uuid.uuid4()),
                    session_id,
                    external_id,
                    display_name,
                    is_group,
                    avatar_url,
                ),
            )
            row = cur.fetchone()
        return _contact(row[:8]), bool(row[8])

    def get_contact(self, contact_id: str) -> Contact | None:
        if not _is_uuid(contact_id):
            return None
        with txn() as cur:
            cur.execute(
                f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE id = %s", (contact_id,)
            )
            row = cur.fetchone()
        return _contact(row) if row else None

    def insert_message(self, message: Message) -> tuple[Message, bool]:
        with txn() as cur:
            cur.execute(
                """
                INSERT INTO messages (id, session_id, contact_id, external_id,
                                      message_type, body, direction, ack, ts,
                                      has_media, reply_to_id, raw_payload)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (session_id, external_id) DO NOTHING
                """,
                (
                    message.id,
                    message.session_id,
                    message.contact_id,
                    message.external_id,
                    message.message_type,
                    message.body,
                    message.direction.value,
                    int(message.ack),
                    message.timestamp,
                    message.has_media,
                    message.reply_to_id,
                    Json(message.raw_payload),
                ),
            )
            created = cur.rowcount > 0
            if created and message.media is not None:
                _upsert_media(cur, message.media)
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
                WHERE m.session_id = %s AND m.external_id = %s
                """,
                (message.session_id, message.external_id),
            )
            row = cur.fetchone()
        return _message(row), created

    def get_message_by_external(
        self, session_id: str, external_id: str
    ) -> Message | None:
        with txn() as cur:
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
                WHERE m.session_id = %s AND m.external_id = %s
                """,
                (session_id, external_id),
            )
            row = cur.fetchone()
        return _message(row) if row else None

    def advance_ack(self, message_id: str, ack: AckState) -> bool:
        with txn() as cur:
            cur.execute(
                "UPDATE messages SET ack = %s WHERE id = %s AND ack < %s",
                (int(ack), message_id, int(ack)),
            )
            return cur.rowcount > 0

    def attach_media(self, descriptor: MediaDescriptor) -> None:
        with txn() as cur:
            cur.execute("SELECT 1 FROM messages WHERE id = %s", (descriptor.message_id,))
            if cur.fetchone() is None:
                raise NotFoundError(f"message {descriptor.message_id} not found")
            _upsert_media(cur, descriptor)

    def list_messages(
        self, session_id: str, contact_id: str, limit: int, offset: int
    ) -> list[Message]:
        with txn() as cur:
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
                WHERE m.session_id = %s AND m.contact_id = %s
                ORDER BY m.ts DESC, m.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (session_id, contact_id, limit, offset),
            )
            rows = cur.fetchall()
        return [_message(r) for r in rows]

    def mark_read(self, session_id: str, contact_id: str) -> int:
        with txn() as cur:
            cur.execute(
                """
                UPDATE messages SET ack = %s
                WHERE session_id = %s AND contact_id = %s
                  AND direction = 'inbound' AND ack < %s
                """,
                (int(AckState.READ), session_id, contact_id, int(AckState.READ)),
            )
            return cur.rowcount

    def chat_summaries(self, session_id: str) -> list[ChatSummary]:
        with txn() as cur:
            cur.execute(
                f"""
                SELECT c.id, c.session_id, c.external_id, c.display_name, c.is_group,
                       c.avatar_url, c.created_at, c.updated_at,
                       lm.*,
                       (SELECT count(*) FROM messages u
                        WHERE u.session_id = c.session_id AND u.contact_id = c.id
                          AND u.direction = 'inbound' AND u.ack < %s)
                FROM contacts c
                LEFT JOIN LATERAL (
                    SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
                    WHERE m.session_id = c.session_id AND m.contact_id = c.id
                    ORDER BY m.ts DESC, m.created_at DESC
                    LIMIT 1
                ) lm ON true
                WHERE c.session_id = %s
                ORDER BY lm.ts DESC NULLS LAST, c.created_at
                """,
                (int(AckState.READ), session_id),
            )
            rows = cur.fetchall()
        return [
            ChatSummary(
                contact=_contact(r[:8]),
                last_message=_message(r[8:27]) if r[8] is not None else None,
                unread_count=r[27],
            )
            for r in rows
        ]

    def search_messages(
        self, session_id: str, query: str, limit: int
    ) -> list[Message]:
        with txn() as cur:
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} {_MESSAGE_FROM}
                WHERE m.session_id = %s AND m.body ILIKE %s
                ORDER BY m.ts DESC
                LIMIT %s
                """,
                (session_id, _like_pattern(query), limit),
            )
            rows = cur.fetchall()
        return [_message(r) for r in rows]

    def session_stats(self, session_id: str, since: datetime) -> SessionStats:
        with txn() as cur:
            cur.execute(
                """
                SELECT count(*),
                       count(DISTINCT contact_id),
                       count(*) FILTER (WHERE direction = 'inbound' AND ack < %s),
                       count(*) FILTER (WHERE ts >= %s),
                       count(*) FILTER (WHERE has_media)
                FROM messages WHERE session_id = %s
                """,
                (int(AckState.READ), since, session_id),
            )
            row = cur.fetchone()
        return SessionStats(
            total_messages=row[0],
            total_contacts=row[1],
            unread_messages=row[2],
            messages_today=row[3],
            media_messages=row[4],
        )

    # ── Sync runs ─────────────────────────────────────────

    def create_sync_run(self, run: SyncRun) -> SyncRun | None:
        with txn() as cur:
            cur.execute(
                f"""
                INSERT INTO sync_runs (id, session_id, kind, window_from, window_to,
                                       status, messages_synced, worker_id,
                                       heartbeat_at)
                VALUES (%s, %s, %s, %s, %s, 'started', 0, %s, COALESCE(%s, now()))
                ON CONFLICT DO NOTHING
                RETURNING {_SYNC_RUN_COLUMNS}
                """,
                (
                    run.id,
                    run.session_id,
                    run.kind.value,
                    run.window_from,
                    run.window_to,
                    run.worker_id,
                    run.heartbeat_at,
                ),
            )
            row = cur.fetchone()
        return _sync_run(row) if row else None

    def update_sync_progress(self, run_id: str, messages_synced: int) -> bool:
        with txn() as cur:
            cur.execute(
                """
                UPDATE sync_runs SET messages_synced = %s, heartbeat_at = now()
                WHERE id = %s AND status = 'started'
                """,
                (messages_synced, run_id),
            )
            return cur.rowcount > 0

    def finish_sync_run(
        self,
        run_id: str,
        status: SyncRunStatus,
        *,
        messages_synced: int,
        error: str | None,
        completed_at: datetime,
    ) -> SyncRun:
        with txn() as cur:
            cur.execute(
                f"""
                UPDATE sync_runs
                SET status = %s, messages_synced = %s, error = %s, completed_at = %s
                WHERE id = %s
                RETURNING {_SYNC_RUN_COLUMNS}
                """,
                (status.value, messages_synced, error, completed_at, run_id),
            )
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"sync run {run_id} not found")
        return _sync_run(row)

    def get_sync_run(self, run_id: str) -> SyncRun | None:
        if not _is_uuid(run_id):
            return None
        with txn() as cur:
            cur.execute(
                f"SELECT {_SYNC_RUN_COLUMNS} FROM sync_runs WHERE id = %s", (run_id,)
            )
            row = cur.fetchone()
        return _sync_run(row) if row else None

    def latest_sync_run(self, session_id: str) -> SyncRun | None:
        with txn() as cur:
            cur.execute(
                f"""
                SELECT {_SYNC_RUN_COLUMNS} FROM sync_runs
                WHERE session_id = %s
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (session_id,),
            )
            row = cur.fetchone()
        return _sync_run(row) if row else None

    def fail_stale_runs(
        self,
        error: str,
        completed_at: datetime,
        heartbeat_before: datetime,
        session_id: str | None = None,
    ) -> int:
        with txn() as cur:
            cur.execute(
                """
                UPDATE sync_runs
                SET status = 'failed', error = %s, completed_at = %s
                WHERE status = 'started'
                  AND heartbeat_at < %s
                  AND (%s::uuid IS NULL OR session_id = %s::uuid)
                """,
                (error, completed_at, heartbeat_before, session_id, session_id),
            )
            return cur.rowcount

    def delete_sync_runs_before(self, cutoff: datetime) -> int:
        with txn() as cur:
            cur.execute(
                "DELETE FROM sync_runs WHERE status <> 'started' AND started_at < %s",
                (cutoff,),
            )
            return cur.rowcount


def _upsert_media(cur, descriptor: MediaDescriptor) -> None:
    cur.execute(
        """
        INSERT INTO media_files (id, message_id, location, mimetype, filename,
                                 uploaded, error)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (message_id) DO UPDATE SET
            location = EXCLUDED.location,
            mimetype = EXCLUDED.mimetype,
            filename = EXCLUDED.filename,
            uploaded = EXCLUDED.uploaded,
            error = EXCLUDED.error
        """,
        (
            descriptor.id,
            descriptor.message_id,
            descriptor.location,
            descriptor.mimetype,
            descriptor.filename,
            descriptor.uploaded,
            descriptor.error,
        ),
    )
