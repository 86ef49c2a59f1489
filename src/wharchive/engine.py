"""Engine wiring - builds the archive components from the environment.

Config:
- STORE_BACKEND: "memory" (default) or "postgres" (uses DATABASE_URL)
- EVOLUTION_API_URL / EVOLUTION_API_KEY: history and send gateway
- SYNC_*: see SyncSettings.from_env()
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from wharchive.domain.access import AccessResolver
from wharchive.domain.chats import ChatAggregationView
from wharchive.domain.hierarchy import HierarchyStore
from wharchive.domain.ingestion import IngestionPipeline, MediaStorage
from wharchive.domain.messaging import MessageSender
from wharchive.domain.sessions import SessionService
from wharchive.domain.sync import SyncOrchestrator, SyncSettings
from wharchive.infra.store import ArchiveStore
from wharchive.whatsapp.gateway_client import EvolutionGateway, WhatsAppGateway


@dataclass
class Engine:
    store: ArchiveStore
    hierarchy: HierarchyStore
    access: AccessResolver
    sessions: SessionService
    pipeline: IngestionPipeline
    sync: SyncOrchestrator
    chats: ChatAggregationView
    sender: MessageSender

    def shutdown(self) -> None:
        self.sync.shutdown()


def _store_from_env() -> ArchiveStore:
    backend = os.environ.get("STORE_BACKEND", "memory").lower()
    if backend == "memory":
        from wharchive.infra.memory_store import InMemoryStore

        return InMemoryStore()
    if backend == "postgres":
        from wharchive.infra.pg_store import PostgresStore

        return PostgresStore()
    raise RuntimeError(f"Unknown STORE_BACKEND: {backend!r} (expected memory or postgres)")


def build_engine(
    store: ArchiveStore | None = None,
    gateway: WhatsAppGateway | None = None,
    media_storage: MediaStorage | None = None,
    sync_settings: SyncSettings | None = None,
) -> Engine:
    """Assemble the engine. Arguments override the environment (tests)."""
    store = store if store is not None else _store_from_env()
    gateway = gateway if gateway is not None else EvolutionGateway.from_env()
    settings = sync_settings or SyncSettings.from_env()

    hierarchy = HierarchyStore(store)
    access = AccessResolver(store)
    sessions = SessionService(store, hierarchy, access)
    pipeline = IngestionPipeline(store, access, sessions, media_storage=media_storage)
    sync = SyncOrchestrator(store, access, pipeline, gateway, settings)
    chats = ChatAggregationView(store, access)
    sender = MessageSender(store, access, pipeline, gateway)

    # Reconnect triggers a gap-fill; deactivation cancels a running sync
    pipeline.set_on_connected(sync.trigger_gap_fill)
    sessions.set_deactivation_hook(
        lambda session_id: sync.cancel(session_id, "session deactivated")
    )
    sync.recover_interrupted()

    return Engine(
        store=store,
        hierarchy=hierarchy,
        access=access,
        sessions=sessions,
        pipeline=pipeline,
        sync=sync,
        chats=chats,
        sender=sender,
    )
