"""Shared test fixtures for Gigbook."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from gigbook.config import Config
from gigbook.core.lifecycle import LifecycleOrchestrator
from gigbook.events.bus import EventBus
from gigbook.models.client import Client
from gigbook.models.proposal import Proposal
from gigbook.storage.memory_store import MemoryStore
from gigbook.storage.sqlite_store import SQLiteStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FixedClock:
    """A settable clock; advances only when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
async def store(tmp_db: Path) -> SQLiteStore:
    s = SQLiteStore(tmp_db, lock_timeout=2.0)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def memory_store() -> MemoryStore:
    s = MemoryStore(lock_timeout=2.0)
    await s.initialize()
    return s


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        workspace_path=tmp_path,
        max_commit_attempts=3,
        retry_backoff_base=0.0,
        retry_backoff_max=0.0,
        lock_timeout=2.0,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture(params=["memory", "sqlite"])
async def engine(request, tmp_db, bus, config, clock) -> LifecycleOrchestrator:
    """Orchestrator over each storage backend."""
    if request.param == "memory":
        backend = MemoryStore(lock_timeout=config.lock_timeout)
    else:
        backend = SQLiteStore(tmp_db, lock_timeout=config.lock_timeout)
    await backend.initialize()
    yield LifecycleOrchestrator(backend, bus, config=config, clock=clock)
    await backend.close()


@pytest.fixture
async def customer(engine: LifecycleOrchestrator) -> Client:
    return await engine.create_client(
        {
            "name": "Ana Torres",
            "email": "ana@torres.dev",
            "phone": "5512345678",
            "company": "Torres Studio",
        }
    )


@pytest.fixture
async def proposal(engine: LifecycleOrchestrator, customer: Client) -> Proposal:
    return await engine.create_proposal(
        {
            "client_id": customer.id,
            "title": "Online shop",
            "description": "Storefront with checkout",
            "price": Decimal("1000.00"),
            "terms": "50% upfront, 50% on delivery",
            "deadline": NOW + timedelta(days=30),
        }
    )
