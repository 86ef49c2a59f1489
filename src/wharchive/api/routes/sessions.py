"""Session endpoints - session list, conversations, threads, sending, sync.

Every endpoint takes the principal forwarded by the front door and defers
authorization to the engine (AccessResolver). Domain errors are mapped to
HTTP statuses by the app factory.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from wharchive.api.deps import get_current_principal, get_engine
from wharchive.domain.errors import ValidationError
from wharchive.domain.models import (
    Action,
    ChatSummary,
    Contact,
    Message,
    Principal,
    Session,
    SyncKind,
    SyncRun,
)
from wharchive.engine import Engine

router = APIRouter(prefix="/sessions", tags=["sessions"])


class SyncRequest(BaseModel):
    kind: SyncKind = SyncKind.GAP_FILL
    window_from: datetime | None = None
    window_to: datetime | None = None


class SendMessageRequest(BaseModel):
    body: str


# ── Serializers ───────────────────────────────────────────


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _session_dict(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "instance_name": session.instance_name,
        "admin_id": session.admin_id,
        "status": session.status.value,
        "is_active": session.is_active,
        "last_message_at": _iso(session.last_message_at),
        "last_connected_at": _iso(session.last_connected_at),
        "created_at": _iso(session.created_at),
    }


def _contact_dict(contact: Contact) -> dict[str, Any]:
    return {
        "id": contact.id,
        "external_id": contact.external_id,
        "display_name": contact.display_name,
        "is_group": contact.is_group,
        "avatar_url": contact.avatar_url,
    }


def _message_dict(message: Message) -> dict[str, Any]:
    media = None
    if message.media is not None:
        media = {
            "location": message.media.location,
            "mimetype": message.media.mimetype,
            "filename": message.media.filename,
            "uploaded": message.media.uploaded,
            "error": message.media.error,
        }
    return {
        "id": message.id,
        "contact_id": message.contact_id,
        "external_id": message.external_id,
        "type": message.message_type,
        "body": message.body,
        "direction": message.direction.value,
        "ack": message.ack.label,
        "timestamp": _iso(message.timestamp),
        "has_media": message.has_media,
        "media": media,
        "reply_to_id": message.reply_to_id,
    }


def _summary_dict(summary: ChatSummary) -> dict[str, Any]:
    return {
        "contact": _contact_dict(summary.contact),
        "last_message": _message_dict(summary.last_message) if summary.last_message else None,
        "unread_count": summary.unread_count,
    }


def _run_dict(run: SyncRun | None) -> dict[str, Any] | None:
    if run is None:
        return None
    return {
        "id": run.id,
        "kind": run.kind.value,
        "status": run.status.value,
        "window_from": _iso(run.window_from),
        "window_to": _iso(run.window_to),
        "messages_synced": run.messages_synced,
        "error": run.error,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
    }


# ── Endpoints ─────────────────────────────────────────────


@router.get("")
def list_sessions(
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> list[dict]:
    return [_session_dict(s) for s in engine.sessions.list_sessions(principal)]


@router.get("/{session_id}/access")
def check_access(
    session_id: str,
    action: Action = Query(Action.READ),
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> dict:
    return {"allowed": engine.access.can_access(principal, session_id, action)}


@router.get("/{session_id}/chats")
def list_chats(
    session_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> list[dict]:
    summaries = engine.chats.list_conversations(principal, session_id)
    return [_summary_dict(s) for s in summaries]


@router.get("/{session_id}/chats/{contact_id}/messages")
def list_messages(
    session_id: str,
    contact_id: str,
    limit: int = Query(50),
    offset: int = Query(0),
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> list[dict]:
    messages = engine.chats.get_messages(principal, session_id, contact_id, limit, offset)
    return [_message_dict(m) for m in messages]


@router.post("/{session_id}/chats/{contact_id}/messages", status_code=201)
def send_message(
    session_id: str,
    contact_id: str,
    body: SendMessageRequest,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> dict:
    message = engine.sender.send_message(principal, session_id, contact_id, body.body)
    return _message_dict(message)


@router.post("/{session_id}/chats/{contact_id}/read")
def mark_read(
    session_id: str,
    contact_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> dict:
    return {"changed": engine.chats.mark_read(principal, session_id, contact_id)}


@router.get("/{session_id}/messages/search")
def search_messages(
    session_id: str,
    q: str = Query(...),
    limit: int = Query(50),
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> list[dict]:
    messages = engine.chats.search_messages(principal, session_id, q, limit)
    return [_message_dict(m) for m in messages]


@router.get("/{session_id}/stats")
def session_stats(
    session_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> dict:
    stats = engine.chats.session_stats(principal, session_id)
    return {
        "total_messages": stats.total_messages,
        "total_contacts": stats.total_contacts,
        "unread_messages": stats.unread_messages,
        "messages_today": stats.messages_today,
        "media_messages": stats.media_messages,
    }


@router.post("/{session_id}/sync", status_code=202)
def start_sync(
    session_id: str,
    body: SyncRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> dict:
    body = body or SyncRequest()
    window = None
    if body.window_from is not None or body.window_to is not None:
        if body.kind != SyncKind.MANUAL:
            raise ValidationError("an explicit window is only accepted for manual syncs")
        if body.window_from is None or body.window_to is None:
            raise ValidationError("window_from and window_to go together")
        window = (body.window_from, body.window_to)

    run = engine.sync.start_sync(principal, session_id, body.kind, window)
    return {"run": _run_dict(run)}


@router.get("/{session_id}/sync")
def sync_status(
    session_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: Engine = Depends(get_engine),
) -> dict:
    status = engine.sync.get_sync_status(principal, session_id)
    return {"state": status.state, "last_run": _run_dict(status.last_run)}
