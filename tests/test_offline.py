from uuid import uuid4

import pytest

from counting import CountObservation, ProductType
from counting.offline import OfflineLog, OfflineSync


@pytest.fixture
def log(tmp_path):
    return OfflineLog(tmp_path)


class Recorder:
    """Wraps the engine's record_count, remembering calls and failing on demand."""

    def __init__(self, engine, fail_on=()):
        self.engine = engine
        self.fail_on = set(fail_on)
        self.calls = []

    async def __call__(self, session_id, product_id, observation, key):
        self.calls.append(key)
        if len(self.calls) in self.fail_on:
            raise OSError("network unreachable")
        return await self.engine.record_count(session_id, product_id, observation, key)


def _bottles(products, n):
    return [products.add(ProductType(uuid4(), False, 750)).product_id for _ in range(n)]


async def test_counts_made_offline_sync_exactly_once(engine, start, products, log):
    session = await start()
    pids = _bottles(products, 3)
    sync = OfflineSync(Recorder(engine), log, online=False)

    for i, pid in enumerate(pids):
        assert await sync.record_count(session.id, pid, {"backup_units": i + 1}) is None
    assert len(log) == 3
    assert await engine.list_counts(session.id) == []

    report = await sync.on_online()

    assert [e.product_id for e in report.synced] == pids
    assert not report.has_problems
    assert len(log) == 0
    for i, pid in enumerate(pids):
        history = await engine.repo.count_history(session.id, pid)
        assert [c.backup_units for c in history] == [i + 1]

    again = await sync.on_online()
    assert again.synced == []
    assert len(await engine.list_counts(session.id)) == 3


async def test_replay_after_crash_is_a_no_op(engine, start, bottle, log):
    session = await start()
    entry = log.append(session.id, bottle.product_id, CountObservation(backup_units=4))
    # the server accepted the entry but the client died before removing it
    await engine.record_count(session.id, bottle.product_id, entry.observation, entry.idempotency_key)

    report = await OfflineSync(Recorder(engine), log).flush()

    assert len(report.synced) == 1
    assert len(await engine.repo.count_history(session.id, bottle.product_id)) == 1


async def test_count_for_closed_session_is_dead_lettered(engine, start, bottle, log):
    session = await start()
    sync = OfflineSync(Recorder(engine), log, online=False)
    await sync.record_count(session.id, bottle.product_id, {"backup_units": 2})
    await engine.complete_session(session.id)

    report = await sync.on_online()

    assert [d.error_type for d in report.dead_lettered] == ["StaleSession"]
    assert report.has_problems
    assert len(log) == 0
    assert len(OfflineLog(log.directory).dead_letters()) == 1
    assert await engine.list_counts(session.id) == []


async def test_invalid_replay_is_dead_lettered_and_can_be_discarded(engine, start, keg_product, log):
    session = await start()
    entry = log.append(session.id, keg_product.product_id, CountObservation(backup_units=1, partial_fraction=0.5))

    report = await OfflineSync(Recorder(engine), log).flush()

    assert [d.error_type for d in report.dead_lettered] == ["InvalidObservation"]
    assert log.discard_dead_letter(entry.idempotency_key)
    assert not log.discard_dead_letter(entry.idempotency_key)
    assert log.dead_letters() == []


async def test_network_error_stops_flush_and_keeps_order(engine, start, products, log):
    session = await start()
    pids = _bottles(products, 3)
    submit = Recorder(engine, fail_on={2})
    sync = OfflineSync(submit, log, online=False)
    for pid in pids:
        await sync.record_count(session.id, pid, {"backup_units": 1})

    report = await sync.on_online()

    assert len(report.synced) == 1
    assert report.pending == 2
    assert not sync.is_online
    assert [e.product_id for e in log.entries()] == pids[1:]

    report = await sync.on_online()
    assert [e.product_id for e in report.synced] == pids[1:]
    assert len(log) == 0


async def test_failed_online_submit_is_queued_with_same_key(engine, start, bottle, log):
    session = await start()
    submit = Recorder(engine, fail_on={1})
    sync = OfflineSync(submit, log)

    assert await sync.record_count(session.id, bottle.product_id, {"backup_units": 3}) is None

    assert not sync.is_online
    assert [e.idempotency_key for e in log.entries()] == submit.calls


async def test_online_count_goes_straight_through(engine, start, bottle, log):
    session = await start()
    sync = OfflineSync(Recorder(engine), log)

    count = await sync.record_count(session.id, bottle.product_id, {"backup_units": 3})

    assert count.backup_units == 3
    assert count.idempotency_key is not None
    assert len(log) == 0


def test_sequence_numbers_never_repeat(log):
    sid, pid = uuid4(), uuid4()
    first = log.append(sid, pid, CountObservation(backup_units=1))
    second = log.append(sid, pid, CountObservation(backup_units=2))
    log.remove(second.seq)

    third = log.append(sid, pid, CountObservation(backup_units=3))

    assert first.seq < second.seq < third.seq
    assert [e.seq for e in OfflineLog(log.directory).entries()] == [first.seq, third.seq]


def test_torn_trailing_line_is_ignored(log):
    log.append(uuid4(), uuid4(), CountObservation(backup_units=1))
    with log.path.open("a", encoding="utf-8") as f:
        f.write('{"seq": 2, "idempotency_')

    assert len(log.entries()) == 1


async def test_store_outage_during_replay_keeps_entries(engine, start, bottle, store, log):
    session = await start()
    sync = OfflineSync(Recorder(engine), log, online=False)
    await sync.record_count(session.id, bottle.product_id, {"backup_units": 2})
    store.available = False

    report = await sync.on_online()

    assert report.synced == []
    assert report.pending == 1
    assert report.has_problems
    assert not sync.is_online
    assert log.dead_letters() == []

    store.available = True
    report = await sync.on_online()
    assert len(report.synced) == 1
    assert [c.backup_units for c in await engine.list_counts(session.id)] == [2]


async def test_store_outage_on_online_submit_is_queued(engine, start, bottle, store, log):
    session = await start()
    sync = OfflineSync(Recorder(engine), log)
    store.available = False

    assert await sync.record_count(session.id, bottle.product_id, {"backup_units": 2}) is None

    assert not sync.is_online
    assert len(log) == 1
