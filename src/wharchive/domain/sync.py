"""Sync orchestrator - history catch-up from the gateway.

Per session: idle -> running -> completed | failed.

A run fetches history pages for its window and feeds every record through
the ingestion pipeline's message upsert, so a re-run over the same window
is safe: already archived messages are no-ops and only new ones count.

Single-flight per session comes from the store (create_sync_run returns
None while another run is started); different sessions sync in parallel on
a thread pool.

Each run holds a lease: the worker renews heartbeat_at before every page
fetch and retry. A started run whose heartbeat is older than lease_seconds
belongs to a dead worker and is failed, by recover_interrupted() or by the
next start on that session. Live runs of other processes are never touched.
"""

from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta

from wharchive.domain.access import AccessResolver
from wharchive.domain.errors import (
    ArchiveError,
    ConflictError,
    NotFoundError,
    SyncCancelledError,
    TransientGatewayError,
    ValidationError,
)
from wharchive.domain.ingestion import IngestionPipeline
from wharchive.domain.models import (
    Action,
    Principal,
    Session,
    SessionStatus,
    SyncKind,
    SyncRun,
    SyncRunStatus,
    SyncStatus,
)
from wharchive.infra.store import ArchiveStore
from wharchive.infra.time import EPOCH, ensure_utc, utc_now
from wharchive.observability.correlation import correlation_scope
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context
from wharchive.whatsapp.gateway_client import HistoryGateway, HistoryPage

logger = get_logger(__name__)

_STATE_BY_STATUS = {
    SyncRunStatus.STARTED: "running",
    SyncRunStatus.COMPLETED: "completed",
    SyncRunStatus.FAILED: "failed",
}


@dataclass(frozen=True)
class SyncSettings:
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    max_workers: int = 4
    history_retention_days: int = 30
    lease_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Read SYNC_* environment variables, falling back to defaults."""
        return cls(
            max_attempts=int(os.environ.get("SYNC_MAX_ATTEMPTS", cls.max_attempts)),
            backoff_base_seconds=float(
                os.environ.get("SYNC_BACKOFF_BASE_SECONDS", cls.backoff_base_seconds)
            ),
            backoff_max_seconds=float(
                os.environ.get("SYNC_BACKOFF_MAX_SECONDS", cls.backoff_max_seconds)
            ),
            max_workers=int(os.environ.get("SYNC_MAX_WORKERS", cls.max_workers)),
            history_retention_days=int(
                os.environ.get("SYNC_HISTORY_RETENTION_DAYS", cls.history_retention_days)
            ),
            lease_seconds=float(os.environ.get("SYNC_LEASE_SECONDS", cls.lease_seconds)),
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


@dataclass
class _ActiveRun:
    run_id: str
    cancel_event: threading.Event
    reason: str = "cancelled"


_LEASE_LOST = "lease lost"


class SyncOrchestrator:
    def __init__(
        self,
        store: ArchiveStore,
        access: AccessResolver,
        pipeline: IngestionPipeline,
        gateway: HistoryGateway,
        settings: SyncSettings | None = None,
    ) -> None:
        self._store = store
        self._access = access
        self._pipeline = pipeline
        self._gateway = gateway
        self.settings = settings or SyncSettings()
        self.worker_id = f"{os.getpid()}-{uuid.uuid4().hex[:12]}"
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="sync"
        )
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveRun] = {}
        self._futures: dict[str, Future] = {}

    # ── Starting runs ─────────────────────────────────────

    def start_sync(
        self,
        principal: Principal,
        session_id: str,
        kind: SyncKind,
        window: tuple[datetime, datetime] | None = None,
    ) -> SyncRun:
        """Start a sync run in the background and return it as started.

        Raises:
            AuthorizationError: If the principal may not sync this session.
            NotFoundError: If the session does not exist.
            ValidationError: If the session is inactive or not connected, or
                the window is empty.
            ConflictError: If a run is already in progress for the session.
        """
        self._access.require(principal, session_id, Action.SYNC)
        return self._start(session_id, kind, window)

    def trigger_gap_fill(self, session_id: str) -> SyncRun | None:
        """System-initiated gap-fill (reconnect). Returns None if one is running."""
        try:
            return self._start(session_id, SyncKind.GAP_FILL, None)
        except ConflictError:
            logger.info(
                "gap-fill skipped, sync already running",
                extra={"extra_fields": safe_log_context(session_id=session_id)},
            )
            return None

    def _start(
        self,
        session_id: str,
        kind: SyncKind,
        window: tuple[datetime, datetime] | None,
    ) -> SyncRun:
        session = self._store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        if not session.is_active:
            raise ValidationError("session is deactivated")
        if session.status != SessionStatus.CONNECTED:
            raise ValidationError("session must be connected to sync")

        run = self._create_run(session, kind, window)
        # The blocking run may belong to a dead worker
        if run is None and self._fail_expired(session.id):
            run = self._create_run(session, kind, window)
        if run is None:
            raise ConflictError(f"sync already running for session {session.id}")

        active = _ActiveRun(run_id=run.id, cancel_event=threading.Event())
        with self._lock:
            try:
                future = self._executor.submit(self._execute, run, session, active)
            except RuntimeError:
                future = None
            else:
                self._active[session.id] = active
                self._futures[run.id] = future
        if future is None:
            self._finish(run, SyncRunStatus.FAILED, 0, "orchestrator shut down")
            raise ArchiveError("sync orchestrator is shut down")
        future.add_done_callback(lambda _: self._forget(session.id, run.id))

        logger.info(
            "sync started",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session.id,
                    run_id=run.id,
                    kind=kind.value,
                    window_from=run.window_from,
                    window_to=run.window_to,
                    worker_id=self.worker_id,
                )
            },
        )
        return run

    def _create_run(
        self,
        session: Session,
        kind: SyncKind,
        window: tuple[datetime, datetime] | None,
    ) -> SyncRun | None:
        window_from, window_to = self._window(session, kind, window)
        return self._store.create_sync_run(
            SyncRun(
                id=str(uuid.uuid4()),
                session_id=session.id,
                kind=kind,
                window_from=window_from,
                window_to=window_to,
                worker_id=self.worker_id,
                heartbeat_at=utc_now(),
            )
        )

    def _window(
        self,
        session: Session,
        kind: SyncKind,
        window: tuple[datetime, datetime] | None,
    ) -> tuple[datetime, datetime]:
        now = utc_now()
        if kind == SyncKind.INITIAL:
            return EPOCH, now

        if kind == SyncKind.MANUAL and window is not None:
            window_from, window_to = ensure_utc(window[0]), ensure_utc(window[1])
            if window_from >= window_to:
                raise ValidationError("sync window must not be empty")
            return window_from, window_to

        window_from = session.last_message_at or EPOCH
        # A failed run may have left older messages behind the watermark;
        # resume from the failed run's lower bound.
        latest = self._store.latest_sync_run(session.id)
        if (
            latest is not None
            and latest.status == SyncRunStatus.FAILED
            and latest.window_from is not None
            and latest.window_from < window_from
        ):
            window_from = latest.window_from
        return window_from, now

    def _forget(self, session_id: str, run_id: str) -> None:
        with self._lock:
            active = self._active.get(session_id)
            if active is not None and active.run_id == run_id:
                del self._active[session_id]
            self._futures.pop(run_id, None)

    # ── Worker ────────────────────────────────────────────

    def _execute(self, run: SyncRun, session: Session, active: _ActiveRun) -> SyncRun:
        with correlation_scope(f"sync:{run.id}"):
            synced = 0
            try:
                cursor: int | None = None
                while True:
                    self._check_cancelled(active)
                    page = self._fetch_with_retry(session, run, cursor, active, synced)
                    for record in page.records:
                        self._check_cancelled(active)
                        result = self._pipeline.upsert_message(session, record)
                        if result.outcome == "created":
                            synced += 1
                    if page.next_cursor is None:
                        break
                    cursor = page.next_cursor

                return self._finish(run, SyncRunStatus.COMPLETED, synced, None)
            except SyncCancelledError as e:
                if e.reason == _LEASE_LOST:
                    # Already failed by another process; the row is not ours
                    logger.warning(
                        "sync lease lost, abandoning run",
                        extra={"extra_fields": safe_log_context(run_id=run.id)},
                    )
                    return self._store.get_sync_run(run.id)
                return self._finish(
                    run, SyncRunStatus.FAILED, synced, f"cancelled: {e.reason}"
                )
            except TransientGatewayError as e:
                return self._finish(
                    run, SyncRunStatus.FAILED, synced, f"gateway unavailable: {e}"
                )
            except Exception as e:
                logger.exception(
                    "sync run crashed",
                    extra={"extra_fields": safe_log_context(run_id=run.id)},
                )
                return self._finish(
                    run, SyncRunStatus.FAILED, synced, f"{type(e).__name__}: {e}"
                )

    def _fetch_with_retry(
        self,
        session: Session,
        run: SyncRun,
        cursor: int | None,
        active: _ActiveRun,
        synced: int,
    ) -> HistoryPage:
        attempt = 1
        while True:
            self._heartbeat(run, synced)
            try:
                return self._gateway.fetch_page(
                    session.instance_name, run.window_from, run.window_to, cursor
                )
            except TransientGatewayError as e:
                if attempt >= self.settings.max_attempts:
                    raise
                delay = self.settings.backoff(attempt)
                logger.warning(
                    "history fetch failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            run_id=run.id,
                            attempt=attempt,
                            delay_seconds=delay,
                            error=str(e),
                        )
                    },
                )
                if active.cancel_event.wait(delay):
                    raise SyncCancelledError(active.reason) from None
                attempt += 1

    def _heartbeat(self, run: SyncRun, synced: int) -> None:
        if not self._store.update_sync_progress(run.id, synced):
            raise SyncCancelledError(_LEASE_LOST)

    @staticmethod
    def _check_cancelled(active: _ActiveRun) -> None:
        if active.cancel_event.is_set():
            raise SyncCancelledError(active.reason)

    def _finish(
        self,
        run: SyncRun,
        status: SyncRunStatus,
        synced: int,
        error: str | None,
    ) -> SyncRun:
        finished = self._store.finish_sync_run(
            run.id,
            status,
            messages_synced=synced,
            error=error,
            completed_at=utc_now(),
        )
        log = logger.info if status == SyncRunStatus.COMPLETED else logger.warning
        log(
            "sync finished",
            extra={
                "extra_fields": safe_log_context(
                    session_id=run.session_id,
                    run_id=run.id,
                    status=status.value,
                    messages_synced=synced,
                    error=error,
                )
            },
        )
        return finished

    # ── Control & status ──────────────────────────────────

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        """Ask the running sync of a session to stop. True if one was running.

        The run settles to failed with the reason; cancellation is observed
        between records, between pages and during backoff waits.
        """
        with self._lock:
            active = self._active.get(session_id)
            if active is None:
                return False
            active.reason = reason
            active.cancel_event.set()
        logger.info(
            "sync cancellation requested",
            extra={
                "extra_fields": safe_log_context(
                    session_id=session_id, run_id=active.run_id, reason=reason
                )
            },
        )
        return True

    def wait(self, run_id: str, timeout: float | None = None) -> SyncRun | None:
        """Block until the run settles (or timeout) and return its record."""
        with self._lock:
            future = self._futures.get(run_id)
        if future is not None:
            future.result(timeout=timeout)
        return self._store.get_sync_run(run_id)

    def get_sync_status(self, principal: Principal, session_id: str) -> SyncStatus:
        self._access.require(principal, session_id, Action.READ)
        latest = self._store.latest_sync_run(session_id)
        if latest is None:
            return SyncStatus(session_id=session_id, state="idle")
        return SyncStatus(
            session_id=session_id,
            state=_STATE_BY_STATUS[latest.status],
            last_run=latest,
        )

    def recover_interrupted(self) -> int:
        """Fail started runs whose worker lease expired (dead processes).

        Runs still heartbeating, in this process or another, are left alone.
        """
        return self._fail_expired()

    def _fail_expired(self, session_id: str | None = None) -> int:
        now = utc_now()
        count = self._store.fail_stale_runs(
            "worker lease expired",
            now,
            now - timedelta(seconds=self.settings.lease_seconds),
            session_id,
        )
        if count:
            logger.warning(
                "expired sync runs failed",
                extra={"extra_fields": safe_log_context(count=count, session_id=session_id)},
            )
        return count

    def prune_history(self, older_than_days: int | None = None) -> int:
        """Delete finished runs older than the retention period."""
        days = older_than_days or self.settings.history_retention_days
        cutoff = utc_now() - timedelta(days=days)
        deleted = self._store.delete_sync_runs_before(cutoff)
        logger.info(
            "sync history pruned",
            extra={"extra_fields": safe_log_context(deleted=deleted, days=days)},
        )
        return deleted

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            session_ids = list(self._active)
        for session_id in session_ids:
            self.cancel(session_id, "shutdown")
        self._executor.shutdown(wait=wait)
