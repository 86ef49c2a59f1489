"""Tests for the sync orchestrator."""

import threading
from datetime import timedelta

import pytest

from helpers import FakeGateway, connect, history, message_data, ts
from wharchive.domain.errors import (
    ArchiveError,
    AuthorizationError,
    ConflictError,
    TransientGatewayError,
    ValidationError,
)
from wharchive.domain.models import AckState, SyncKind, SyncRun, SyncRunStatus
from wharchive.domain.access import AccessResolver
from wharchive.domain.sync import SyncOrchestrator, SyncSettings
from wharchive.engine import build_engine
from wharchive.infra.time import EPOCH, utc_now
from wharchive.whatsapp.evolution_adapter import parse_message


def _run(engine, principal, session_id, kind=SyncKind.INITIAL, window=None) -> SyncRun:
    run = engine.sync.start_sync(principal, session_id, kind, window)
    return engine.sync.wait(run.id, timeout=5)


def _orphan(session_id, run_id, heartbeat_age) -> SyncRun:
    """A started run whose worker last heartbeated heartbeat_age ago."""
    return SyncRun(
        id=run_id,
        session_id=session_id,
        kind=SyncKind.INITIAL,
        window_from=EPOCH,
        window_to=utc_now(),
        worker_id="gone",
        heartbeat_at=utc_now() - heartbeat_age,
    )


class TestSyncRuns:
    def test_initial_sync_ingests_history(self, engine, org, gateway):
        gateway.records["line-a"] = history(12)

        run = _run(engine, org.admin_a, org.session.id)

        assert run.status == SyncRunStatus.COMPLETED
        assert run.messages_synced == 12
        assert run.window_from == EPOCH
        assert len(gateway.calls) == 3
        stored = engine.store.get_message_by_external(org.session.id, "hist-0")
        assert stored.ack == AckState.READ

    def test_rerun_counts_only_new_messages(self, engine, org, gateway):
        gateway.records["line-a"] = history(6)
        _run(engine, org.admin_a, org.session.id)

        again = _run(engine, org.admin_a, org.session.id)
        assert again.status == SyncRunStatus.COMPLETED
        assert again.messages_synced == 0

    def test_gap_fill_starts_at_watermark(self, engine, org, gateway):
        engine.store.advance_watermark(org.session.id, ts(10))
        gateway.records["line-a"] = history(20)

        run = _run(engine, org.admin_a, org.session.id, SyncKind.GAP_FILL)
        assert run.window_from == ts(10)
        assert run.messages_synced == 9

    def test_failure_mid_window_then_resume(self, engine, org, gateway):
        # window (T0, T1] holds 40 messages; the gateway dies after 25
        t0 = ts(-1)
        engine.store.advance_watermark(org.session.id, t0)
        gateway.records["line-a"] = history(40)
        gateway.fail_from_page = 6

        failed = _run(engine, org.admin_a, org.session.id, SyncKind.GAP_FILL)
        assert failed.status == SyncRunStatus.FAILED
        assert failed.messages_synced == 25
        assert failed.error.startswith("gateway unavailable")
        contact_id = engine.store.get_message_by_external(org.session.id, "hist-0").contact_id
        assert len(engine.store.list_messages(org.session.id, contact_id, 200, 0)) == 25

        gateway.fail_from_page = None
        resumed = _run(engine, org.admin_a, org.session.id, SyncKind.GAP_FILL)
        assert resumed.status == SyncRunStatus.COMPLETED
        assert resumed.window_from == t0
        assert resumed.messages_synced == 15
        assert len(engine.store.list_messages(org.session.id, contact_id, 200, 0)) == 40

    def test_transient_errors_are_retried(self, engine, org, gateway):
        gateway.records["line-a"] = history(3)
        gateway.failures.extend([TransientGatewayError("blip"), TransientGatewayError("blip")])

        run = _run(engine, org.admin_a, org.session.id)
        assert run.status == SyncRunStatus.COMPLETED
        assert run.messages_synced == 3

    def test_retries_exhausted(self, engine, org, gateway):
        gateway.failures.extend([TransientGatewayError("down")] * 3)
        run = _run(engine, org.admin_a, org.session.id)
        assert run.status == SyncRunStatus.FAILED
        assert len(gateway.calls) == 3

    def test_unexpected_error_fails_run(self, engine, org, gateway):
        gateway.failures.append(RuntimeError("bad page"))
        run = _run(engine, org.admin_a, org.session.id)
        assert run.status == SyncRunStatus.FAILED
        assert run.error == "RuntimeError: bad page"

    def test_manual_window(self, engine, org, gateway):
        gateway.records["line-a"] = history(10)
        run = _run(engine, org.admin_a, org.session.id, SyncKind.MANUAL, (ts(2), ts(5)))
        assert run.messages_synced == 3

    def test_naive_manual_window_read_as_utc(self, engine, org, gateway):
        gateway.records["line-a"] = history(10)
        naive = (ts(2).replace(tzinfo=None), ts(5).replace(tzinfo=None))
        run = _run(engine, org.admin_a, org.session.id, SyncKind.MANUAL, naive)

        assert run.status == SyncRunStatus.COMPLETED
        assert run.window_from == ts(2)
        assert run.messages_synced == 3

    def test_empty_manual_window_rejected(self, engine, org):
        with pytest.raises(ValidationError):
            engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.MANUAL, (ts(5), ts(5)))

    def test_webhook_and_history_overlap_do_not_duplicate(self, engine, org, gateway):
        records = history(5)
        gateway.records["line-a"] = records
        overlap = message_data("hist-2", ts=records[2].raw["messageTimestamp"])
        engine.pipeline.upsert_message(org.session, parse_message(overlap))

        run = _run(engine, org.admin_a, org.session.id)
        assert run.messages_synced == 4


class TestStartRules:
    def test_requires_sync_access(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.sync.start_sync(org.member_1, org.session.id, SyncKind.INITIAL)

    def test_assigned_member_may_sync(self, engine, org):
        engine.sessions.assign_session(org.admin_a, org.session.id, member_id=org.member_1.id)
        run = _run(engine, org.member_1, org.session.id)
        assert run.status == SyncRunStatus.COMPLETED

    def test_disconnected_session_rejected(self, engine, org):
        with pytest.raises(ValidationError):
            engine.sync.start_sync(org.admin_b, org.session_b.id, SyncKind.INITIAL)

    def test_deactivated_session_rejected(self, engine, org):
        engine.sessions.deactivate_session(org.admin_a, org.session.id)
        with pytest.raises(ValidationError):
            engine.sync.start_sync(org.top, org.session.id, SyncKind.INITIAL)

    def test_single_flight_per_session(self, engine, org, gateway):
        gateway.gate = threading.Event()
        first = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)
        try:
            with pytest.raises(ConflictError):
                engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.GAP_FILL)
            assert engine.sync.trigger_gap_fill(org.session.id) is None
        finally:
            gateway.gate.set()
        assert engine.sync.wait(first.id, timeout=5).status == SyncRunStatus.COMPLETED

    def test_concurrent_starts_yield_one_run(self, engine, org, gateway):
        gateway.gate = threading.Event()
        barrier = threading.Barrier(8)
        started, conflicts = [], []

        def attempt():
            barrier.wait()
            try:
                run = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)
                started.append(run)
            except ConflictError:
                conflicts.append(1)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        gateway.gate.set()

        assert len(started) == 1
        assert len(conflicts) == 7
        engine.sync.wait(started[0].id, timeout=5)

    def test_sessions_sync_in_parallel(self, engine, org, gateway):
        connect(engine, org.session_b.id)
        gateway.gate = threading.Event()
        a = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)
        b = engine.sync.start_sync(org.admin_b, org.session_b.id, SyncKind.INITIAL)
        gateway.gate.set()
        assert engine.sync.wait(a.id, timeout=5).status == SyncRunStatus.COMPLETED
        assert engine.sync.wait(b.id, timeout=5).status == SyncRunStatus.COMPLETED


class TestCancellation:
    def test_deactivation_cancels_running_sync(self, engine, org, gateway):
        gateway.records["line-a"] = history(10)
        gateway.gate = threading.Event()
        run = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)

        engine.sessions.deactivate_session(org.admin_a, org.session.id)
        gateway.gate.set()

        finished = engine.sync.wait(run.id, timeout=5)
        assert finished.status == SyncRunStatus.FAILED
        assert finished.error == "cancelled: session deactivated"

    def test_cancel_interrupts_backoff(self, store, gateway, org):
        slow = SyncOrchestrator(
            store,
            AccessResolver(store),
            pipeline=None,
            gateway=gateway,
            settings=SyncSettings(max_attempts=5, backoff_base_seconds=30, backoff_max_seconds=30),
        )
        gateway.failures.extend([TransientGatewayError("down")] * 5)
        run = slow.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)
        assert slow.cancel(org.session.id, "operator")

        finished = slow.wait(run.id, timeout=5)
        assert finished.error == "cancelled: operator"
        slow.shutdown()

    def test_cancel_without_run(self, engine, org):
        assert engine.sync.cancel(org.session.id) is False


class TestStatusAndHistory:
    def test_status_lifecycle(self, engine, org, gateway):
        assert engine.sync.get_sync_status(org.admin_a, org.session.id).state == "idle"

        gateway.gate = threading.Event()
        run = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)
        status = engine.sync.get_sync_status(org.admin_a, org.session.id)
        assert status.state == "running"
        assert status.last_run.id == run.id

        gateway.gate.set()
        engine.sync.wait(run.id, timeout=5)
        assert engine.sync.get_sync_status(org.admin_a, org.session.id).state == "completed"

    def test_status_requires_read_access(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.sync.get_sync_status(org.admin_b, org.session.id)

    def test_recover_interrupted(self, engine, org, store):
        store.create_sync_run(_orphan(org.session.id, "stale", heartbeat_age=timedelta(hours=1)))
        assert engine.sync.recover_interrupted() == 1
        stale = store.get_sync_run("stale")
        assert stale.status == SyncRunStatus.FAILED
        assert stale.error == "worker lease expired"

    def test_prune_history(self, engine, org, store):
        old = store.create_sync_run(
            SyncRun(id="old", session_id=org.session.id, kind=SyncKind.INITIAL,
                    window_from=EPOCH, window_to=utc_now(),
                    started_at=utc_now() - timedelta(days=45))
        )
        store.finish_sync_run(old.id, SyncRunStatus.COMPLETED, messages_synced=0,
                              error=None, completed_at=utc_now() - timedelta(days=45))
        recent = _run(engine, org.admin_a, org.session.id)

        assert engine.sync.prune_history() == 1
        assert store.get_sync_run("old") is None
        assert store.get_sync_run(recent.id) is not None


class TestWorkerLease:
    def test_second_engine_leaves_live_run_alone(self, engine, store, org, gateway):
        gateway.records["line-a"] = history(3)
        gateway.gate = threading.Event()
        run = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)

        sibling = build_engine(
            store=store,
            gateway=FakeGateway(),
            sync_settings=SyncSettings(backoff_base_seconds=0.0, backoff_max_seconds=0.0),
        )
        try:
            assert store.get_sync_run(run.id).status == SyncRunStatus.STARTED
            with pytest.raises(ConflictError):
                sibling.sync.start_sync(org.admin_a, org.session.id, SyncKind.GAP_FILL)
        finally:
            gateway.gate.set()
            sibling.shutdown()

        finished = engine.sync.wait(run.id, timeout=5)
        assert finished.status == SyncRunStatus.COMPLETED
        assert finished.messages_synced == 3

    def test_expired_run_is_taken_over(self, engine, store, org, gateway):
        gateway.records["line-a"] = history(2)
        store.create_sync_run(_orphan(org.session.id, "dead", heartbeat_age=timedelta(hours=1)))

        run = _run(engine, org.admin_a, org.session.id)

        assert run.status == SyncRunStatus.COMPLETED
        assert store.get_sync_run("dead").status == SyncRunStatus.FAILED

    def test_fresh_run_of_another_worker_conflicts(self, engine, store, org):
        store.create_sync_run(_orphan(org.session.id, "busy", heartbeat_age=timedelta(seconds=5)))

        with pytest.raises(ConflictError):
            engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.GAP_FILL)
        assert engine.sync.recover_interrupted() == 0
        assert store.get_sync_run("busy").status == SyncRunStatus.STARTED

    def test_lost_lease_abandons_run(self, engine, store, org, gateway):
        gateway.records["line-a"] = history(8)
        gateway.gate = threading.Event()
        run = engine.sync.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)

        store.fail_stale_runs(
            "worker lease expired", utc_now(), utc_now() + timedelta(hours=1)
        )
        gateway.gate.set()
        abandoned = engine.sync.wait(run.id, timeout=5)

        assert abandoned.status == SyncRunStatus.FAILED
        assert abandoned.error == "worker lease expired"

    def test_start_after_shutdown_fails_run(self, store, gateway, org):
        orchestrator = SyncOrchestrator(
            store, AccessResolver(store), pipeline=None, gateway=gateway
        )
        orchestrator.shutdown()

        with pytest.raises(ArchiveError):
            orchestrator.start_sync(org.admin_a, org.session.id, SyncKind.INITIAL)
        latest = store.latest_sync_run(org.session.id)
        assert latest.status == SyncRunStatus.FAILED
        assert latest.error == "orchestrator shut down"
        # The session is not left blocked
        assert store.create_sync_run(_orphan(org.session.id, "next", timedelta(0))) is not None

class TestSettings:
    def test_backoff_is_capped(self):
        settings = SyncSettings(backoff_base_seconds=1.0, backoff_max_seconds=5.0)
        assert [settings.backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SYNC_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("SYNC_HISTORY_RETENTION_DAYS", "3")
        settings = SyncSettings.from_env()
        assert settings.max_attempts == 7
        assert settings.history_retention_days == 3
        assert settings.max_workers == 4
