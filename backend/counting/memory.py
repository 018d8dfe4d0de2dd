"""In-process implementations of the engine's collaborators."""

import asyncio
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from .errors import (
    KegObserverUnavailable,
    SessionConflict,
    SessionNotActive,
    SessionNotFound,
    StockVersionConflict,
    StoreUnavailable,
)
from .models import (
    CompletionResult,
    Count,
    CountSession,
    KegRecord,
    ModeTag,
    ProductReconciliation,
    ProductType,
    SessionStatus,
    StockRecord,
    StockWrite,
    Zone,
    utcnow,
)


class InMemoryStore:
    def __init__(self, clock=utcnow):
        self.clock = clock
        self.available = True
        self._stock: Dict[Tuple[ModeTag, UUID], StockRecord] = {}
        self._kegs: Dict[Tuple[ModeTag, UUID], List[KegRecord]] = {}
        self._batches: Dict[UUID, List[ProductReconciliation]] = {}
        self._lock = asyncio.Lock()

    def _check_available(self):
        if not self.available:
            raise StoreUnavailable("store offline")

    def set_stock(self, product_id: UUID, backup_count: int, open_fraction: float = 0.0,
                  mode_tag: ModeTag = ModeTag.PRODUCTION) -> StockRecord:
        record = StockRecord(product_id, backup_count, open_fraction, self.clock())
        self._stock[(mode_tag, product_id)] = record
        return record

    def receive(self, product_id: UUID, units: int, mode_tag: ModeTag = ModeTag.PRODUCTION) -> StockRecord:
        """A delivery landing on the shelf (what receiving does to a bottle product)."""
        current = self._stock.get((mode_tag, product_id))
        backup = (current.backup_count if current else 0) + units
        opened = current.open_fraction if current else 0.0
        return self.set_stock(product_id, backup, opened, mode_tag)

    def add_keg(self, keg: KegRecord, mode_tag: ModeTag = ModeTag.PRODUCTION) -> KegRecord:
        self._kegs.setdefault((mode_tag, keg.product_id), []).append(keg)
        return keg

    async def get_stock(self, product_id: UUID, mode_tag: ModeTag) -> Optional[StockRecord]:
        self._check_available()
        return self._stock.get((mode_tag, product_id))

    async def get_keg_records(self, product_id: UUID, mode_tag: ModeTag) -> List[KegRecord]:
        self._check_available()
        return list(self._kegs.get((mode_tag, product_id), []))

    async def apply_stock_batch(
        self,
        writes: Sequence[StockWrite],
        mode_tag: ModeTag,
        batch_id: UUID,
        plan: Sequence[ProductReconciliation] = (),
    ) -> bool:
        async with self._lock:
            self._check_available()
            if batch_id in self._batches:
                return False

            moved = []
            for w in writes:
                current = self._stock.get((mode_tag, w.product_id))
                current_version = current.last_modified_at if current else None
                if current_version != w.expected_last_modified_at:
                    moved.append(w.product_id)
            if moved:
                raise StockVersionConflict(moved)

            now = self.clock()
            for w in writes:
                self._stock[(mode_tag, w.product_id)] = StockRecord(w.product_id, w.backup_count, w.open_fraction, now)
            self._batches[batch_id] = list(plan)
            return True

    async def get_applied_batch(self, batch_id: UUID) -> Optional[List[ProductReconciliation]]:
        self._check_available()
        plan = self._batches.get(batch_id)
        return list(plan) if plan is not None else None


class InMemoryProductResolver:
    def __init__(self, products: Optional[Sequence[ProductType]] = None):
        self._products: Dict[UUID, ProductType] = {p.product_id: p for p in products or []}

    def add(self, product: ProductType) -> ProductType:
        self._products[product.product_id] = product
        return product

    async def get_product_type(self, product_id: UUID) -> Optional[ProductType]:
        return self._products.get(product_id)


class StaticKegLevelObserver:
    """Fixed fill readings per tap; taps listed in ``failing`` raise like a dead sensor."""

    def __init__(self, fills: Optional[Dict[str, float]] = None, failing: Optional[Set[str]] = None):
        self.fills = dict(fills or {})
        self.failing = set(failing or ())

    async def current_fill_fraction(self, tap_id: str) -> Optional[float]:
        if tap_id in self.failing:
            raise KegObserverUnavailable(tap_id)
        return self.fills.get(tap_id)


class InMemorySessionRepository:
    def __init__(self, zones: Optional[Sequence[Zone]] = None):
        self._zones: Dict[UUID, Zone] = {z.id: z for z in zones or []}
        self._sessions: Dict[UUID, CountSession] = {}
        self._completions: Dict[UUID, CompletionResult] = {}
        self._current: Dict[Tuple[UUID, UUID], Count] = {}
        self._history: Dict[Tuple[UUID, UUID], List[Count]] = {}
        self._lock = asyncio.Lock()

    def add_zone(self, zone: Zone) -> Zone:
        self._zones[zone.id] = zone
        return zone

    async def get_zone(self, zone_id: UUID) -> Optional[Zone]:
        return self._zones.get(zone_id)

    async def create_session(self, session: CountSession) -> CountSession:
        async with self._lock:
            existing = await self.get_active_session(session.actor_id, session.mode_tag)
            if existing is not None:
                raise SessionConflict(existing)
            self._sessions[session.id] = session
            return session

    async def get_session(self, session_id: UUID) -> Optional[CountSession]:
        return self._sessions.get(session_id)

    async def get_active_session(self, actor_id: UUID, mode_tag: ModeTag) -> Optional[CountSession]:
        for s in self._sessions.values():
            if s.actor_id == actor_id and s.mode_tag == mode_tag and s.is_active:
                return s
        return None

    async def list_sessions(self, mode_tag: ModeTag) -> List[CountSession]:
        sessions = [s for s in self._sessions.values() if s.mode_tag == mode_tag]
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    async def transition(
        self,
        session_id: UUID,
        from_status: SessionStatus,
        to_status: SessionStatus,
        result: Optional[CompletionResult] = None,
    ) -> Optional[CountSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != from_status:
                return None
            now = result.completed_at if result is not None else utcnow()
            if to_status == SessionStatus.COMPLETED:
                session = replace(session, status=to_status, completed_at=now)
            elif to_status == SessionStatus.CANCELLED:
                session = replace(session, status=to_status, cancelled_at=now)
            else:
                session = replace(session, status=to_status)
            self._sessions[session_id] = session
            if result is not None:
                self._completions[session_id] = result
            return session

    async def get_completion(self, session_id: UUID) -> Optional[CompletionResult]:
        return self._completions.get(session_id)

    async def get_count(self, session_id: UUID, product_id: UUID) -> Optional[Count]:
        return self._current.get((session_id, product_id))

    async def find_count_by_key(self, session_id: UUID, idempotency_key: str) -> Optional[Count]:
        for (sid, _), revisions in self._history.items():
            if sid != session_id:
                continue
            for c in revisions:
                if c.idempotency_key == idempotency_key:
                    return c
        return None

    async def save_count(self, count: Count, supersede: bool) -> Count:
        async with self._lock:
            session = self._sessions.get(count.session_id)
            if session is None:
                raise SessionNotFound(count.session_id)
            if not session.is_active:
                raise SessionNotActive(count.session_id, session.status)
            key = (count.session_id, count.product_id)
            history = self._history.setdefault(key, [])
            saved = replace(count, revision=len(history) + 1)
            history.append(saved)
            if supersede:
                self._current[key] = saved
            return saved

    async def list_counts(self, session_id: UUID) -> List[Count]:
        counts = [c for (sid, _), c in self._current.items() if sid == session_id]
        return sorted(counts, key=lambda c: c.observed_at)

    async def count_history(self, session_id: UUID, product_id: UUID) -> List[Count]:
        return list(self._history.get((session_id, product_id), []))
