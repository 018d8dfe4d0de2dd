"""
Records operator observations into session-scoped storage.

Nothing here writes live stock: a count in progress can never be half
applied. Stock only changes when the session completes (see reconciliation).
"""

from typing import Optional, Union
from uuid import UUID

from pydantic import ValidationError

from core.logging_config import get_logger

from .accounting import partial_fraction_for, recorded_keg_equivalent
from .errors import InvalidObservation, SessionNotActive, SessionNotFound, UnknownProduct
from .interfaces import ProductResolver, SessionRepository, Store
from .models import Count, CountObservation, CountSession, ProductType, utcnow

logger = get_logger(__name__)


def parse_observation(raw: Union[CountObservation, dict], product_id: Optional[UUID] = None) -> CountObservation:
    if isinstance(raw, CountObservation):
        return raw
    try:
        return CountObservation.model_validate(raw)
    except ValidationError as e:
        raise InvalidObservation(f"Invalid observation: {e.errors()[0]['msg']}", product_id=product_id) from e


class CountRecorder:
    def __init__(self, repo: SessionRepository, store: Store, products: ProductResolver, clock=utcnow):
        self.repo = repo
        self.store = store
        self.products = products
        self.clock = clock

    async def _active_session(self, session_id: UUID) -> CountSession:
        session = await self.repo.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if not session.is_active:
            raise SessionNotActive(session_id, session.status)
        return session

    async def _resolve_product(self, product_id: UUID) -> ProductType:
        product = await self.products.get_product_type(product_id)
        if product is None:
            raise UnknownProduct(product_id)
        return product

    async def expected_snapshot(self, session: CountSession, product: ProductType) -> float:
        """What the stock record says is on hand right now."""
        if product.is_sold_by_volume:
            kegs = await self.store.get_keg_records(product.product_id, session.mode_tag)
            return recorded_keg_equivalent(kegs)
        stock = await self.store.get_stock(product.product_id, session.mode_tag)
        return stock.total if stock is not None else 0.0

    async def record_count(
        self,
        session_id: UUID,
        product_id: UUID,
        observation: Union[CountObservation, dict],
        idempotency_key: Optional[str] = None,
    ) -> Count:
        observation = parse_observation(observation, product_id)
        session = await self._active_session(session_id)

        if idempotency_key:
            existing = await self.repo.find_count_by_key(session_id, idempotency_key)
            if existing is not None:
                logger.info(
                    "count replay ignored",
                    extra={"session_id": session_id, "product_id": product_id, "idempotency_key": idempotency_key},
                )
                current = await self.repo.get_count(session_id, existing.product_id)
                return current or existing

        product = await self._resolve_product(product_id)
        partial_fraction = partial_fraction_for(observation, product)

        expected = observation.expected_units
        if expected is None:
            expected = await self.expected_snapshot(session, product)

        current = await self.repo.get_count(session_id, product_id)
        observed_at = observation.observed_at or self.clock()
        count = Count(
            session_id=session_id,
            product_id=product_id,
            backup_units=observation.backup_units,
            partial_fraction=partial_fraction,
            expected_units=expected,
            observed_at=observed_at,
            idempotency_key=idempotency_key,
            is_manual_estimate=observation.is_manual_estimate,
        )

        # Same-product counts are ordered by observed_at; a late replay of an
        # older observation is kept in history but does not become current.
        supersede = current is None or observed_at >= current.observed_at
        saved = await self.repo.save_count(count, supersede=supersede)
        if not supersede:
            logger.info(
                "older observation kept in history only",
                extra={"session_id": session_id, "product_id": product_id, "observed_at": observed_at},
            )
            return current

        logger.debug(
            "count recorded",
            extra={"session_id": session_id, "product_id": product_id, "revision": saved.revision},
        )
        return saved
