"""Shared pytest fixtures for archive tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import FakeGateway, seed_org  # noqa: E402
from wharchive.domain.sync import SyncSettings  # noqa: E402
from wharchive.engine import build_engine  # noqa: E402
from wharchive.infra.memory_store import InMemoryStore  # noqa: E402

FAST_SYNC = SyncSettings(
    max_attempts=3,
    backoff_base_seconds=0.0,
    backoff_max_seconds=0.0,
    max_workers=4,
    history_retention_days=30,
)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(store, gateway):
    """Engine on the in-memory store with a scripted gateway and no backoff."""
    engine = build_engine(store=store, gateway=gateway, sync_settings=FAST_SYNC)
    yield engine
    engine.shutdown()


@pytest.fixture
def org(engine):
    return seed_org(engine)
