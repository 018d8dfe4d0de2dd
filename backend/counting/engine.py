from typing import List, Optional, Union
from uuid import UUID

from core.config import settings

from .accounting import KegAccounting, recorded_on_deck, translate_keg
from .errors import InvalidObservation, UnknownProduct
from .interfaces import KegLevelObserver, ProductResolver, SessionRepository, Store
from .models import (
    CompletionResult,
    Count,
    CountObservation,
    CountSession,
    ModeTag,
    VarianceItem,
    utcnow,
)
from .recorder import CountRecorder
from .reconciliation import ReconciliationEngine
from .sessions import SessionLifecycleManager
from .variance import VarianceReporter


def mode_tag_for(value: Union[ModeTag, str, None]) -> ModeTag:
    if value is None:
        return ModeTag(settings.default_mode_tag)
    return ModeTag(value)


class InventoryCountEngine:
    """Caller-facing operations: plain data in, plain data or errors out."""

    def __init__(
        self,
        repo: SessionRepository,
        store: Store,
        products: ProductResolver,
        observer: KegLevelObserver,
        clock=utcnow,
        max_attempts: Optional[int] = None,
    ):
        self.repo = repo
        self.store = store
        self.products = products
        self.observer = observer
        self.recorder = CountRecorder(repo, store, products, clock=clock)
        self.reporter = VarianceReporter(repo, store, products, observer)
        self.reconciler = ReconciliationEngine(repo, store, products, max_attempts=max_attempts)
        self.sessions = SessionLifecycleManager(repo, self.reconciler, self.reporter, clock=clock)

    async def start_session(self, actor_id: UUID, zone_id: UUID, mode_tag: ModeTag) -> CountSession:
        return await self.sessions.start(actor_id, zone_id, mode_tag)

    async def get_session(self, session_id: UUID) -> CountSession:
        return await self.sessions.get(session_id)

    async def get_active_session(self, actor_id: UUID, mode_tag: ModeTag) -> Optional[CountSession]:
        return await self.sessions.get_active(actor_id, mode_tag)

    async def list_sessions(self, mode_tag: ModeTag) -> List[CountSession]:
        return await self.sessions.list_sessions(mode_tag)

    async def list_counts(self, session_id: UUID) -> List[Count]:
        await self.sessions.get(session_id)
        return await self.repo.list_counts(session_id)

    async def record_count(
        self,
        session_id: UUID,
        product_id: UUID,
        observation: Union[CountObservation, dict],
        idempotency_key: Optional[str] = None,
    ) -> Count:
        # serialized with complete/cancel so a count cannot land after the stock batch
        async with self.sessions.guard(session_id):
            return await self.recorder.record_count(session_id, product_id, observation, idempotency_key)

    async def preview_variance(self, session_id: UUID) -> List[VarianceItem]:
        return await self.sessions.review(session_id)

    async def complete_session(self, session_id: UUID) -> CompletionResult:
        return await self.sessions.complete(session_id)

    async def cancel_session(self, session_id: UUID) -> CountSession:
        return await self.sessions.cancel(session_id)

    async def keg_summary(self, product_id: UUID, mode_tag: ModeTag, on_deck_count: Optional[int] = None) -> KegAccounting:
        """Tapped kegs with live fill, plus the on-deck headcount (recorded unless one is given)."""
        product = await self.products.get_product_type(product_id)
        if product is None:
            raise UnknownProduct(product_id)
        if not product.is_sold_by_volume:
            raise InvalidObservation("Product is not sold by volume", product_id=product_id)
        kegs = await self.store.get_keg_records(product_id, mode_tag)
        if on_deck_count is None:
            on_deck_count = recorded_on_deck(kegs)
        return await translate_keg(product, on_deck_count, kegs, self.observer)
