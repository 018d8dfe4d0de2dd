"""
SQLAlchemy implementations of the counting engine's collaborators.

Each call opens its own AsyncSession; multi-row writes run in one
transaction so they land together or not at all.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.logging_config import get_logger
from counting.errors import (
    SessionConflict,
    SessionNotActive,
    SessionNotFound,
    StockVersionConflict,
    StoreUnavailable,
)
from counting.models import (
    CompletionResult,
    Count,
    CountSession,
    KegRecord,
    KegStatus,
    ModeTag,
    ProductReconciliation,
    ProductType,
    SessionStatus,
    StockRecord,
    StockWrite,
    Zone,
    utcnow,
)

from .inventory.count import InventoryCount as InventoryCountModel
from .inventory.count import InventoryCountRevision as InventoryCountRevisionModel
from .inventory.session import InventorySession as InventorySessionModel
from .inventory.stock import StockBatch as StockBatchModel
from .inventory.stock import StockRecord as StockRecordModel
from .keg import Keg as KegModel
from .product import Product as ProductModel
from .zone import Zone as ZoneModel

logger = get_logger(__name__)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _session_from_row(row: InventorySessionModel) -> CountSession:
    return CountSession(
        id=row.id,
        actor_id=row.actor_id,
        zone_id=row.zone_id,
        mode_tag=ModeTag(row.mode_tag),
        status=SessionStatus(row.status),
        started_at=_as_utc(row.started_at),
        completed_at=_as_utc(row.completed_at),
        cancelled_at=_as_utc(row.cancelled_at),
    )


def _count_from_row(row) -> Count:
    return Count(
        session_id=row.session_id,
        product_id=row.product_id,
        backup_units=int(row.backup_units),
        partial_fraction=float(row.partial_fraction),
        expected_units=float(row.expected_units) if row.expected_units is not None else None,
        observed_at=_as_utc(row.observed_at),
        idempotency_key=row.idempotency_key,
        is_manual_estimate=bool(row.is_manual_estimate),
        revision=int(row.revision),
    )


def _stock_from_row(row: StockRecordModel) -> StockRecord:
    return StockRecord(
        product_id=row.product_id,
        backup_count=int(row.backup_count),
        open_fraction=float(row.open_fraction),
        last_modified_at=_as_utc(row.last_modified_at),
    )


def _keg_from_row(row: KegModel) -> KegRecord:
    return KegRecord(
        id=row.id,
        product_id=row.product_id,
        status=KegStatus(row.status),
        initial_volume=float(row.initial_volume or 0),
        remaining_volume=float(row.remaining_volume or 0),
        tap_id=row.tap_id,
    )


class SqlSessionRepository:
    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def get_zone(self, zone_id: UUID) -> Optional[Zone]:
        async with self.session_maker() as db:
            row = await db.get(ZoneModel, zone_id)
            if row is None:
                return None
            return Zone(id=row.id, name=row.name, description=row.description)

    async def create_session(self, session: CountSession) -> CountSession:
        async with self.session_maker() as db:
            db.add(
                InventorySessionModel(
                    id=session.id,
                    actor_id=session.actor_id,
                    zone_id=session.zone_id,
                    mode_tag=session.mode_tag.value,
                    status=session.status.value,
                    started_at=session.started_at,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self.get_active_session(session.actor_id, session.mode_tag)
                if existing is None:
                    raise
                raise SessionConflict(existing)
        return session

    async def get_session(self, session_id: UUID) -> Optional[CountSession]:
        async with self.session_maker() as db:
            row = await db.get(InventorySessionModel, session_id)
            return _session_from_row(row) if row is not None else None

    async def get_active_session(self, actor_id: UUID, mode_tag: ModeTag) -> Optional[CountSession]:
        async with self.session_maker() as db:
            res = await db.execute(
                select(InventorySessionModel)
                .where(InventorySessionModel.actor_id == actor_id)
                .where(InventorySessionModel.mode_tag == mode_tag.value)
                .where(InventorySessionModel.status == SessionStatus.IN_PROGRESS.value)
            )
            row = res.scalars().first()
            return _session_from_row(row) if row is not None else None

    async def list_sessions(self, mode_tag: ModeTag) -> List[CountSession]:
        async with self.session_maker() as db:
            res = await db.execute(
                select(InventorySessionModel)
                .where(InventorySessionModel.mode_tag == mode_tag.value)
                .order_by(InventorySessionModel.started_at.desc())
            )
            return [_session_from_row(r) for r in res.scalars().all()]

    async def transition(
        self,
        session_id: UUID,
        from_status: SessionStatus,
        to_status: SessionStatus,
        result: Optional[CompletionResult] = None,
    ) -> Optional[CountSession]:
        now = result.completed_at if result is not None else utcnow()
        values = {"status": to_status.value}
        if to_status == SessionStatus.COMPLETED:
            values["completed_at"] = now
        elif to_status == SessionStatus.CANCELLED:
            values["cancelled_at"] = now
        if result is not None:
            values["completion"] = result.model_dump(mode="json")

        async with self.session_maker() as db:
            res = await db.execute(
                update(InventorySessionModel)
                .where(InventorySessionModel.id == session_id)
                .where(InventorySessionModel.status == from_status.value)
                .values(**values)
            )
            await db.commit()
            if res.rowcount != 1:
                return None
        return await self.get_session(session_id)

    async def get_completion(self, session_id: UUID) -> Optional[CompletionResult]:
        async with self.session_maker() as db:
            row = await db.get(InventorySessionModel, session_id)
            if row is None or row.completion is None:
                return None
            return CompletionResult.model_validate(row.completion)

    async def get_count(self, session_id: UUID, product_id: UUID) -> Optional[Count]:
        async with self.session_maker() as db:
            row = await db.get(InventoryCountModel, (session_id, product_id))
            return _count_from_row(row) if row is not None else None

    async def find_count_by_key(self, session_id: UUID, idempotency_key: str) -> Optional[Count]:
        async with self.session_maker() as db:
            res = await db.execute(
                select(InventoryCountRevisionModel)
                .where(InventoryCountRevisionModel.session_id == session_id)
                .where(InventoryCountRevisionModel.idempotency_key == idempotency_key)
                .order_by(InventoryCountRevisionModel.revision)
            )
            row = res.scalars().first()
            return _count_from_row(row) if row is not None else None

    async def save_count(self, count: Count, supersede: bool) -> Count:
        async with self.session_maker() as db:
            async with db.begin():
                # row lock: a concurrent transition waits until this count is in
                status = await db.scalar(
                    select(InventorySessionModel.status)
                    .where(InventorySessionModel.id == count.session_id)
                    .with_for_update()
                )
                if status is None:
                    raise SessionNotFound(count.session_id)
                if status != SessionStatus.IN_PROGRESS.value:
                    raise SessionNotActive(count.session_id, SessionStatus(status))

                last = await db.scalar(
                    select(func.max(InventoryCountRevisionModel.revision))
                    .where(InventoryCountRevisionModel.session_id == count.session_id)
                    .where(InventoryCountRevisionModel.product_id == count.product_id)
                )
                revision = (last or 0) + 1
                fields = dict(
                    backup_units=count.backup_units,
                    partial_fraction=count.partial_fraction,
                    expected_units=count.expected_units,
                    observed_at=count.observed_at,
                    idempotency_key=count.idempotency_key,
                    is_manual_estimate=count.is_manual_estimate,
                )
                db.add(
                    InventoryCountRevisionModel(
                        session_id=count.session_id,
                        product_id=count.product_id,
                        revision=revision,
                        **fields,
                    )
                )
                if supersede:
                    current = await db.get(InventoryCountModel, (count.session_id, count.product_id))
                    if current is None:
                        db.add(
                            InventoryCountModel(
                                session_id=count.session_id,
                                product_id=count.product_id,
                                revision=revision,
                                **fields,
                            )
                        )
                    else:
                        for k, v in fields.items():
                            setattr(current, k, v)
                        current.revision = revision

        return Count(
            session_id=count.session_id,
            product_id=count.product_id,
            backup_units=count.backup_units,
            partial_fraction=count.partial_fraction,
            expected_units=count.expected_units,
            observed_at=count.observed_at,
            idempotency_key=count.idempotency_key,
            is_manual_estimate=count.is_manual_estimate,
            revision=revision,
        )

    async def list_counts(self, session_id: UUID) -> List[Count]:
        async with self.session_maker() as db:
            res = await db.execute(
                select(InventoryCountModel)
                .where(InventoryCountModel.session_id == session_id)
                .order_by(InventoryCountModel.observed_at)
            )
            return [_count_from_row(r) for r in res.scalars().all()]

    async def count_history(self, session_id: UUID, product_id: UUID) -> List[Count]:
        async with self.session_maker() as db:
            res = await db.execute(
                select(InventoryCountRevisionModel)
                .where(InventoryCountRevisionModel.session_id == session_id)
                .where(InventoryCountRevisionModel.product_id == product_id)
                .order_by(InventoryCountRevisionModel.revision)
            )
            return [_count_from_row(r) for r in res.scalars().all()]


class SqlStockStore:
    def __init__(self, session_maker: async_sessionmaker, clock=utcnow):
        self.session_maker = session_maker
        self.clock = clock

    async def get_stock(self, product_id: UUID, mode_tag: ModeTag) -> Optional[StockRecord]:
        try:
            async with self.session_maker() as db:
                res = await db.execute(
                    select(StockRecordModel)
                    .where(StockRecordModel.product_id == product_id)
                    .where(StockRecordModel.mode_tag == mode_tag.value)
                )
                row = res.scalars().first()
                return _stock_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    async def get_keg_records(self, product_id: UUID, mode_tag: ModeTag) -> List[KegRecord]:
        try:
            async with self.session_maker() as db:
                res = await db.execute(
                    select(KegModel)
                    .where(KegModel.product_id == product_id)
                    .where(KegModel.mode_tag == mode_tag.value)
                    .order_by(KegModel.date_received)
                )
                return [_keg_from_row(r) for r in res.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    async def apply_stock_batch(
        self,
        writes: Sequence[StockWrite],
        mode_tag: ModeTag,
        batch_id: UUID,
        plan: Sequence[ProductReconciliation] = (),
    ) -> bool:
        now = self.clock()
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    if await db.get(StockBatchModel, batch_id) is not None:
                        return False

                    moved = []
                    for w in writes:
                        if w.expected_last_modified_at is None:
                            existing = await db.scalar(
                                select(StockRecordModel.id)
                                .where(StockRecordModel.product_id == w.product_id)
                                .where(StockRecordModel.mode_tag == mode_tag.value)
                            )
                            if existing is not None:
                                moved.append(w.product_id)
                                continue
                            db.add(
                                StockRecordModel(
                                    product_id=w.product_id,
                                    mode_tag=mode_tag.value,
                                    backup_count=w.backup_count,
                                    open_fraction=w.open_fraction,
                                    last_modified_at=now,
                                )
                            )
                            continue

                        res = await db.execute(
                            update(StockRecordModel)
                            .where(StockRecordModel.product_id == w.product_id)
                            .where(StockRecordModel.mode_tag == mode_tag.value)
                            .where(StockRecordModel.last_modified_at == w.expected_last_modified_at)
                            .values(backup_count=w.backup_count, open_fraction=w.open_fraction, last_modified_at=now)
                        )
                        if res.rowcount != 1:
                            moved.append(w.product_id)

                    if moved:
                        # leaving the begin() block with an exception rolls everything back
                        raise StockVersionConflict(moved)

                    db.add(
                        StockBatchModel(
                            id=batch_id,
                            mode_tag=mode_tag.value,
                            writes=len(writes),
                            applied_at=now,
                            plan=[p.model_dump(mode="json") for p in plan],
                        )
                    )
        except StockVersionConflict:
            raise
        except IntegrityError as e:
            # someone created a record we meant to create
            raise StockVersionConflict([w.product_id for w in writes if w.expected_last_modified_at is None]) from e
        except SQLAlchemyError as e:
            logger.error("stock batch failed", extra={"batch_id": batch_id, "error": str(e)})
            raise StoreUnavailable(str(e)) from e

        logger.info("stock batch applied", extra={"batch_id": batch_id, "writes": len(writes), "mode_tag": mode_tag.value})
        return True

    async def get_applied_batch(self, batch_id: UUID) -> Optional[List[ProductReconciliation]]:
        try:
            async with self.session_maker() as db:
                row = await db.get(StockBatchModel, batch_id)
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e
        if row is None:
            return None
        return [ProductReconciliation.model_validate(p) for p in row.plan or []]

    async def receive(self, product_id: UUID, units: int, mode_tag: ModeTag) -> StockRecord:
        """Delivery of sealed units (what receiving does to a bottle product).

        A single increment in SQL, so it lands on top of whatever a concurrent
        reconciliation batch wrote instead of replacing it.
        """
        for attempt in range(2):
            now = self.clock()
            try:
                async with self.session_maker() as db:
                    async with db.begin():
                        res = await db.execute(
                            update(StockRecordModel)
                            .where(StockRecordModel.product_id == product_id)
                            .where(StockRecordModel.mode_tag == mode_tag.value)
                            .values(backup_count=StockRecordModel.backup_count + units, last_modified_at=now)
                        )
                        if res.rowcount == 0:
                            db.add(
                                StockRecordModel(
                                    product_id=product_id,
                                    mode_tag=mode_tag.value,
                                    backup_count=units,
                                    open_fraction=0.0,
                                    last_modified_at=now,
                                )
                            )
                break
            except IntegrityError:
                # another writer created the record first; increment it instead
                if attempt:
                    raise

        stock = await self.get_stock(product_id, mode_tag)
        logger.info("stock received", extra={"product_id": product_id, "units": units, "mode_tag": mode_tag.value})
        return stock


class SqlProductResolver:
    def __init__(self, session_maker: async_sessionmaker, default_container_size_ml: Optional[int] = None):
        self.session_maker = session_maker
        self.default_container_size_ml = default_container_size_ml or settings.default_container_size_ml

    async def get_product_type(self, product_id: UUID) -> Optional[ProductType]:
        async with self.session_maker() as db:
            row = await db.get(ProductModel, product_id)
            if row is None:
                return None
            return ProductType(
                product_id=row.id,
                is_sold_by_volume=bool(row.is_sold_by_volume),
                container_size_ml=row.container_size_ml or self.default_container_size_ml,
            )


class RecordedFillObserver:
    """Fill level from the keg record's remaining volume, for bars without tap sensors."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def current_fill_fraction(self, tap_id: str) -> Optional[float]:
        async with self.session_maker() as db:
            res = await db.execute(
                select(KegModel)
                .where(KegModel.tap_id == tap_id)
                .where(KegModel.status == KegStatus.TAPPED.value)
                .order_by(KegModel.date_tapped.desc())
            )
            row = res.scalars().first()
            if row is None:
                return None
            return _keg_from_row(row).recorded_fill
