"""Shared test helpers for archive tests.

Payload builders for the Evolution webhook shapes, a scripted history
gateway and an organisation seeder. These are NOT fixtures.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from wharchive.domain.errors import TransientGatewayError
from wharchive.domain.models import AckState, Principal, Role, Session, SessionStatus, Team
from wharchive.engine import Engine
from wharchive.whatsapp.evolution_adapter import parse_message
from wharchive.whatsapp.gateway_client import HistoryPage
from wharchive.whatsapp.models import InboundMessage

CONTACT_JID = "5511900000001@s.whatsapp.net"
BASE_TS = 1_700_000_000


def message_data(
    message_id: str,
    *,
    jid: str = CONTACT_JID,
    text: str = "hello",
    from_me: bool = False,
    ts: int = BASE_TS,
    status=None,
    push_name: str | None = "Alice",
    content: dict | None = None,
    quoted_id: str | None = None,
) -> dict:
    """One Evolution message record (webhook item or history record)."""
    data = {
        "key": {"id": message_id, "remoteJid": jid, "fromMe": from_me},
        "message": content if content is not None else {"conversation": text},
        "messageTimestamp": ts,
    }
    if push_name is not None:
        data["pushName"] = push_name
    if status is not None:
        data["status"] = status
    if quoted_id is not None:
        data["contextInfo"] = {"stanzaId": quoted_id}
    return data


def envelope(event: str, instance: str, data) -> dict:
    return {"event": event, "instance": instance, "data": data}


def ack_data(message_id: str, status, jid: str = CONTACT_JID) -> dict:
    return {"key": {"id": message_id, "remoteJid": jid}, "update": {"status": status}}


def history(count: int, *, start_ts: int = BASE_TS, jid: str = CONTACT_JID) -> list[InboundMessage]:
    """count history records one second apart, ids hist-0 .. hist-(count-1)."""
    return [
        parse_message(
            message_data(f"hist-{i}", jid=jid, text=f"history {i}", ts=start_ts + i),
            default_ack=AckState.READ,
        )
        for i in range(count)
    ]


class FakeGateway:
    """Scripted WhatsAppGateway.

    Serves records per instance in timestamp order, page_size at a time,
    honouring the (window_from, window_to] window. Sent texts are recorded
    in sent and answered with ids sent-0, sent-1, ...
    """

    def __init__(self, page_size: int = 5) -> None:
        self.page_size = page_size
        self.records: dict[str, list[InboundMessage]] = {}
        self.calls: list[tuple] = []
        # Raised (once each) before any page is served
        self.failures: deque[Exception] = deque()
        # Pages >= this number always fail
        self.fail_from_page: int | None = None
        # When set, fetch_page blocks until released
        self.gate: threading.Event | None = None
        self.sent: list[tuple[str, str, str]] = []
        # Raised (once each) by send_text
        self.send_failures: deque[Exception] = deque()

    def fetch_page(self, instance_name, window_from, window_to, cursor=None) -> HistoryPage:
        page = cursor or 1
        self.calls.append((instance_name, window_from, window_to, page))
        if self.gate is not None:
            self.gate.wait(5)
        if self.failures:
            raise self.failures.popleft()
        if self.fail_from_page is not None and page >= self.fail_from_page:
            raise TransientGatewayError("gateway down")

        in_window = sorted(
            (
                r
                for r in self.records.get(instance_name, [])
                if (window_from is None or r.timestamp > window_from)
                and r.timestamp <= window_to
            ),
            key=lambda r: r.timestamp,
        )
        start = (page - 1) * self.page_size
        chunk = in_window[start : start + self.page_size]
        has_more = start + self.page_size < len(in_window)
        return HistoryPage(records=chunk, next_cursor=page + 1 if has_more else None)

    def send_text(self, instance_name, number, text) -> InboundMessage:
        if self.send_failures:
            raise self.send_failures.popleft()
        message_id = f"sent-{len(self.sent)}"
        self.sent.append((instance_name, number, text))
        return parse_message(
            message_data(
                message_id,
                jid=number,
                text=text,
                from_me=True,
                ts=BASE_TS + 1000 + len(self.sent),
                push_name=None,
            ),
            default_ack=AckState.SERVER,
        )


@dataclass
class Org:
    top: Principal
    admin_a: Principal
    admin_b: Principal
    member_1: Principal
    member_2: Principal
    member_b: Principal
    team: Team
    session: Session
    session_b: Session


def seed_org(engine: Engine) -> Org:
    """top -> {admin_a -> {member_1, member_2}, admin_b -> {member_b}}.

    admin_a owns session "line-a" (connected) and a team holding member_2.
    admin_b owns session "line-b" (disconnected). Nothing is assigned yet.
    """
    hierarchy = engine.hierarchy
    top = hierarchy.bootstrap_top_admin("root")
    admin_a = hierarchy.create_principal(top, Role.ADMIN, "admin-a")
    admin_b = hierarchy.create_principal(top, Role.ADMIN, "admin-b")
    member_1 = hierarchy.create_principal(admin_a, Role.MEMBER, "member-1")
    member_2 = hierarchy.create_principal(admin_a, Role.MEMBER, "member-2")
    member_b = hierarchy.create_principal(admin_b, Role.MEMBER, "member-b")

    team = hierarchy.create_team(admin_a, "support")
    hierarchy.add_team_member(admin_a, team.id, member_2.id)

    session = engine.sessions.create_session(admin_a, "line-a")
    session = connect(engine, session.id)
    session_b = engine.sessions.create_session(admin_b, "line-b")

    return Org(
        top=top,
        admin_a=admin_a,
        admin_b=admin_b,
        member_1=member_1,
        member_2=member_2,
        member_b=member_b,
        team=engine.store.get_team(team.id),
        session=session,
        session_b=session_b,
    )


def connect(engine: Engine, session_id: str) -> Session:
    """Mark a session connected without going through the gap-fill trigger."""
    return engine.store.update_session_status(
        session_id, SessionStatus.CONNECTED, connected_at=datetime.now(timezone.utc)
    )


def ts(offset_seconds: int = 0) -> datetime:
    return datetime.fromtimestamp(BASE_TS, tz=timezone.utc) + timedelta(seconds=offset_seconds)


class LogRecorder:
    """Stand-in logger that captures calls for PII assertions."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level: str, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def logged_text(self) -> str:
        return " ".join(f"{args} {kwargs}" for _, args, kwargs in self.calls)

    def messages(self) -> list[str]:
        return [args[0] for _, args, _ in self.calls if args]
