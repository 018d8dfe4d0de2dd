"""The SQLAlchemy collaborators, run against in-memory SQLite."""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from counting import (
    InventoryCountEngine,
    KegStatus,
    ModeTag,
    SessionConflict,
    SessionNotActive,
    SessionStatus,
    StockVersionConflict,
)
from counting.models import CompletionResult, Count, CountSession, ProductReconciliation, StockWrite
from db.database import create_db_and_tables
from db.keg import Keg
from db.product import Product
from db.repositories import (
    RecordedFillObserver,
    SqlProductResolver,
    SqlSessionRepository,
    SqlStockStore,
)
from db.zone import Zone


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_db_and_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def maker(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def seeded(maker):
    zone = Zone(id=uuid4(), name="Walk-in Cooler")
    bottle = Product(id=uuid4(), name="House Vodka", container_size_ml=1000)
    unsized = Product(id=uuid4(), name="Mystery Gin")
    lager = Product(id=uuid4(), name="Lager", is_sold_by_volume=True)
    tapped = Keg(
        product_id=lager.id,
        mode_tag="production",
        status="tapped",
        initial_volume=1984.0,
        remaining_volume=992.0,
        tap_id="tap-7",
    )
    async with maker() as db:
        db.add_all([zone, bottle, unsized, lager, tapped])
        await db.commit()
    return {"zone": zone.id, "bottle": bottle.id, "unsized": unsized.id, "lager": lager.id}


@pytest.fixture
def repo(maker):
    return SqlSessionRepository(maker)


@pytest.fixture
def sql_store(maker, clock):
    return SqlStockStore(maker, clock=clock)


def _session(actor_id, zone_id, clock, mode=ModeTag.PRODUCTION):
    return CountSession(uuid4(), actor_id, zone_id, mode, SessionStatus.IN_PROGRESS, clock())


class TestSessions:
    async def test_zone_lookup(self, repo, seeded):
        zone = await repo.get_zone(seeded["zone"])
        assert zone.name == "Walk-in Cooler"
        assert await repo.get_zone(uuid4()) is None

    async def test_unique_index_rejects_second_active_session(self, repo, seeded, clock, actor_id):
        first = await repo.create_session(_session(actor_id, seeded["zone"], clock))

        with pytest.raises(SessionConflict) as exc:
            await repo.create_session(_session(actor_id, seeded["zone"], clock))
        assert exc.value.existing.id == first.id

        # simulation is a separate slot
        await repo.create_session(_session(actor_id, seeded["zone"], clock, ModeTag.SIMULATION))

    async def test_transition_is_compare_and_swap(self, repo, seeded, clock, actor_id):
        session = await repo.create_session(_session(actor_id, seeded["zone"], clock))
        result = CompletionResult(session_id=session.id, completed_at=clock())

        done = await repo.transition(session.id, SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED, result)
        assert done.status == SessionStatus.COMPLETED
        assert done.completed_at == result.completed_at

        again = await repo.transition(session.id, SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED)
        assert again is None
        assert (await repo.get_completion(session.id)).model_dump() == result.model_dump()

        # completed sessions free the slot
        await repo.create_session(_session(actor_id, seeded["zone"], clock))

    async def test_list_sessions_newest_first(self, repo, seeded, clock):
        older = await repo.create_session(_session(uuid4(), seeded["zone"], clock))
        clock.advance(minutes=1)
        newer = await repo.create_session(_session(uuid4(), seeded["zone"], clock))

        listed = await repo.list_sessions(ModeTag.PRODUCTION)

        assert [s.id for s in listed] == [newer.id, older.id]
        assert await repo.list_sessions(ModeTag.SIMULATION) == []


class TestCounts:
    async def test_revisions_and_current(self, repo, seeded, clock, actor_id):
        session = await repo.create_session(_session(actor_id, seeded["zone"], clock))
        pid = seeded["bottle"]
        first = Count(session.id, pid, 3, 0.0, 3.0, clock(), idempotency_key="k1")
        late = Count(session.id, pid, 9, 0.0, 3.0, first.observed_at - timedelta(minutes=1), idempotency_key="k2")
        second = Count(session.id, pid, 4, 0.25, 3.0, clock(), idempotency_key="k3")

        assert (await repo.save_count(first, supersede=True)).revision == 1
        assert (await repo.save_count(late, supersede=False)).revision == 2
        assert (await repo.save_count(second, supersede=True)).revision == 3

        current = await repo.get_count(session.id, pid)
        assert (current.backup_units, current.partial_fraction, current.revision) == (4, 0.25, 3)
        assert [c.backup_units for c in await repo.count_history(session.id, pid)] == [3, 9, 4]
        assert (await repo.find_count_by_key(session.id, "k2")).backup_units == 9
        assert await repo.find_count_by_key(session.id, "nope") is None
        assert len(await repo.list_counts(session.id)) == 1

    async def test_closed_session_rejects_counts(self, repo, seeded, clock, actor_id):
        session = await repo.create_session(_session(actor_id, seeded["zone"], clock))
        await repo.transition(session.id, SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED)

        with pytest.raises(SessionNotActive):
            await repo.save_count(Count(session.id, seeded["bottle"], 1, 0.0, 1.0, clock()), supersede=True)
        assert await repo.count_history(session.id, seeded["bottle"]) == []


class TestStockStore:
    async def test_batch_is_compare_and_swap(self, sql_store, seeded):
        pid = seeded["bottle"]
        stock = await sql_store.receive(pid, 4, ModeTag.PRODUCTION)

        stale = StockWrite(pid, 7, 0.5, stock.last_modified_at - timedelta(seconds=1))
        with pytest.raises(StockVersionConflict) as exc:
            await sql_store.apply_stock_batch([stale], ModeTag.PRODUCTION, uuid4())
        assert exc.value.product_ids == [pid]
        assert (await sql_store.get_stock(pid, ModeTag.PRODUCTION)).backup_count == 4

        fresh = StockWrite(pid, 7, 0.5, stock.last_modified_at)
        batch_id = uuid4()
        assert await sql_store.apply_stock_batch([fresh], ModeTag.PRODUCTION, batch_id)
        assert not await sql_store.apply_stock_batch([fresh], ModeTag.PRODUCTION, batch_id)

        after = await sql_store.get_stock(pid, ModeTag.PRODUCTION)
        assert (after.backup_count, after.open_fraction) == (7, 0.5)
        assert after.last_modified_at > stock.last_modified_at

    async def test_batch_creates_missing_record(self, sql_store, seeded):
        pid = seeded["bottle"]
        await sql_store.apply_stock_batch([StockWrite(pid, 2, 0.0, None)], ModeTag.SIMULATION, uuid4())

        assert (await sql_store.get_stock(pid, ModeTag.SIMULATION)).backup_count == 2
        assert await sql_store.get_stock(pid, ModeTag.PRODUCTION) is None

    async def test_failed_batch_rolls_back_every_write(self, sql_store, seeded):
        a, b = seeded["bottle"], seeded["unsized"]
        sa = await sql_store.receive(a, 1, ModeTag.PRODUCTION)
        await sql_store.receive(b, 1, ModeTag.PRODUCTION)

        writes = [StockWrite(a, 5, 0.0, sa.last_modified_at), StockWrite(b, 5, 0.0, None)]
        with pytest.raises(StockVersionConflict):
            await sql_store.apply_stock_batch(writes, ModeTag.PRODUCTION, uuid4())

        assert (await sql_store.get_stock(a, ModeTag.PRODUCTION)).backup_count == 1

    async def test_applied_batch_keeps_its_plan(self, sql_store, seeded):
        pid = seeded["bottle"]
        plan = [
            ProductReconciliation(
                product_id=pid,
                previous_total=0,
                observed_total=2.5,
                expected_units=0,
                delta=2.5,
                new_backup_count=2,
                new_open_fraction=0.5,
                rounding_residue=0.0,
            )
        ]
        batch_id = uuid4()
        assert await sql_store.get_applied_batch(batch_id) is None

        await sql_store.apply_stock_batch([StockWrite(pid, 2, 0.5, None)], ModeTag.PRODUCTION, batch_id, plan)

        assert [p.model_dump() for p in await sql_store.get_applied_batch(batch_id)] == [p.model_dump() for p in plan]

    async def test_receive_is_a_single_increment(self, sql_store, seeded, db_engine):
        pid = seeded["bottle"]
        created = await sql_store.receive(pid, 4, ModeTag.PRODUCTION)
        assert created.backup_count == 4

        statements = []

        def capture(conn, cursor, statement, *args):
            statements.append(statement.strip().upper())

        event.listen(db_engine.sync_engine, "before_cursor_execute", capture)
        try:
            after = await sql_store.receive(pid, 6, ModeTag.PRODUCTION)
        finally:
            event.remove(db_engine.sync_engine, "before_cursor_execute", capture)

        # no read ahead of the write, so a batch committing in between is never overwritten
        assert statements[0].startswith("UPDATE STOCK_RECORDS")
        assert "STOCK_RECORDS.BACKUP_COUNT +" in statements[0]
        assert after.backup_count == 10
        assert after.last_modified_at > created.last_modified_at

    async def test_receive_on_top_of_reconciled_stock(self, sql_store, seeded):
        pid = seeded["bottle"]
        stock = await sql_store.receive(pid, 4, ModeTag.PRODUCTION)
        await sql_store.apply_stock_batch([StockWrite(pid, 7, 0.5, stock.last_modified_at)], ModeTag.PRODUCTION, uuid4())

        after = await sql_store.receive(pid, 6, ModeTag.PRODUCTION)

        assert (after.backup_count, after.open_fraction) == (13, 0.5)

    async def test_keg_records(self, sql_store, seeded):
        kegs = await sql_store.get_keg_records(seeded["lager"], ModeTag.PRODUCTION)
        assert [(k.status, k.tap_id) for k in kegs] == [(KegStatus.TAPPED, "tap-7")]
        assert kegs[0].recorded_fill == pytest.approx(0.5)


async def test_product_types(maker, seeded):
    resolver = SqlProductResolver(maker, default_container_size_ml=750)

    assert (await resolver.get_product_type(seeded["bottle"])).container_size_ml == 1000
    assert (await resolver.get_product_type(seeded["unsized"])).container_size_ml == 750
    assert (await resolver.get_product_type(seeded["lager"])).is_sold_by_volume
    assert await resolver.get_product_type(uuid4()) is None


async def test_recorded_fill_observer(maker, seeded):
    observer = RecordedFillObserver(maker)
    assert await observer.current_fill_fraction("tap-7") == pytest.approx(0.5)
    assert await observer.current_fill_fraction("tap-99") is None


async def test_delivery_during_count_end_to_end(maker, seeded, sql_store, clock, actor_id):
    engine = InventoryCountEngine(
        SqlSessionRepository(maker),
        sql_store,
        SqlProductResolver(maker),
        RecordedFillObserver(maker),
        clock=clock,
    )
    pid = seeded["bottle"]
    await sql_store.receive(pid, 4, ModeTag.PRODUCTION)

    session = await engine.start_session(actor_id, seeded["zone"], ModeTag.PRODUCTION)
    clock.advance(minutes=5)
    await sql_store.receive(pid, 6, ModeTag.PRODUCTION)
    clock.advance(minutes=5)
    await engine.record_count(session.id, pid, {"backup_units": 5, "expected_units": 4})
    await engine.record_count(session.id, seeded["lager"], {"backup_units": 0})

    result = await engine.complete_session(session.id)

    assert (await sql_store.get_stock(pid, ModeTag.PRODUCTION)).backup_count == 11
    assert result.reconciled_with_conflict
    assert (await engine.complete_session(session.id)).model_dump() == result.model_dump()
    assert (await engine.get_session(session.id)).status == SessionStatus.COMPLETED
