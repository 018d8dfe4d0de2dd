"""
Shared fixtures for the counting engine tests.

- FakeClock: deterministic time that tests advance explicitly
- in-memory collaborators wired into an InventoryCountEngine
- a Back Bar zone, a 750ml bottle product and a keg product
"""

import os

# keep the app's module-level engine off Postgres during tests
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from counting import InventoryCountEngine, ModeTag, ProductType, Zone
from counting.memory import (
    InMemoryProductResolver,
    InMemorySessionRepository,
    InMemoryStore,
    StaticKegLevelObserver,
)


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        # every reading moves time forward a little so versions never collide
        self.now = self.now + timedelta(microseconds=1)
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def actor_id():
    return uuid4()


@pytest.fixture
def zone():
    return Zone(id=uuid4(), name="Back Bar", description="Bottles behind the bar")


@pytest.fixture
def bottle():
    return ProductType(product_id=uuid4(), is_sold_by_volume=False, container_size_ml=750)


@pytest.fixture
def keg_product():
    return ProductType(product_id=uuid4(), is_sold_by_volume=True, container_size_ml=58674)


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def repo(zone):
    return InMemorySessionRepository(zones=[zone])


@pytest.fixture
def products(bottle, keg_product):
    return InMemoryProductResolver([bottle, keg_product])


@pytest.fixture
def observer():
    return StaticKegLevelObserver()


@pytest.fixture
def engine(repo, store, products, observer, clock):
    return InventoryCountEngine(repo, store, products, observer, clock=clock)


@pytest.fixture
def start(engine, actor_id, zone):
    """Start a production session for the default actor."""

    async def _start(mode_tag: ModeTag = ModeTag.PRODUCTION):
        return await engine.start_session(actor_id, zone.id, mode_tag)

    return _start
