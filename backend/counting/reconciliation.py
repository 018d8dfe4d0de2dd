"""
Writes a completed session back into live stock.

Receiving and POS sync keep changing stock while a count runs, so a count is
never blindly written over the record. For each counted bottle product:

- record untouched since the session started: stock becomes what was counted
- record changed since the session started: the operator's correction
  (counted - expected) is added to the *current* stock and the product is
  flagged ``reconciled_with_conflict``

Every write carries the ``last_modified_at`` it was computed from. If the
store reports that a record moved in the meantime, the moved products are
re-read and recomputed and the whole batch is retried.

Kegs are never written here. The on-deck headcount is only compared with the
keg records and mismatches are reported.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from core.config import settings
from core.logging_config import get_logger

from .accounting import recorded_on_deck
from .errors import StockContention, StockVersionConflict, UnknownProduct
from .interfaces import ProductResolver, SessionRepository, Store
from .models import (
    Count,
    CountSession,
    KegHeadcountCheck,
    ProductReconciliation,
    ProductType,
    StockRecord,
    StockWrite,
)

logger = get_logger(__name__)


@dataclass
class ReconciliationOutcome:
    products: List[ProductReconciliation] = field(default_factory=list)
    keg_checks: List[KegHeadcountCheck] = field(default_factory=list)
    attempts: int = 0
    already_applied: bool = False


def plan_product(session: CountSession, count: Count, stock: Optional[StockRecord]) -> Tuple[StockWrite, ProductReconciliation]:
    current_total = stock.total if stock is not None else 0.0
    observed = count.observed_total
    moved = (
        stock is not None
        and stock.last_modified_at is not None
        and stock.last_modified_at > session.started_at
    )

    if moved and count.expected_units is not None:
        expected = count.expected_units
        delta = observed - expected
        new_total = current_total + delta
        new_open = count.partial_fraction
        raw_backup = new_total - new_open
        new_backup = int(round(raw_backup))
        clamped = new_backup < 0
        if clamped:
            new_backup = 0
        # whole-unit rounding (or the clamp) leaves this much of the total unwritten
        residue = round(new_total - (new_backup + new_open), 6)
    else:
        expected = count.expected_units if count.expected_units is not None else current_total
        delta = observed - current_total
        new_backup = count.backup_units
        new_open = count.partial_fraction
        clamped = False
        residue = 0.0

    write = StockWrite(
        product_id=count.product_id,
        backup_count=new_backup,
        open_fraction=new_open,
        expected_last_modified_at=stock.last_modified_at if stock is not None else None,
    )
    result = ProductReconciliation(
        product_id=count.product_id,
        previous_total=current_total,
        observed_total=observed,
        expected_units=expected,
        delta=round(delta, 6),
        new_backup_count=new_backup,
        new_open_fraction=new_open,
        reconciled_with_conflict=moved,
        clamped=clamped,
        rounding_residue=residue,
    )
    return write, result


class ReconciliationEngine:
    def __init__(
        self,
        repo: SessionRepository,
        store: Store,
        products: ProductResolver,
        max_attempts: Optional[int] = None,
    ):
        self.repo = repo
        self.store = store
        self.products = products
        self.max_attempts = max_attempts or settings.reconcile_max_attempts

    async def _split_counts(self, counts: Sequence[Count]) -> Tuple[List[Count], List[Count]]:
        bottles, kegs = [], []
        for count in counts:
            product: Optional[ProductType] = await self.products.get_product_type(count.product_id)
            if product is None:
                raise UnknownProduct(count.product_id)
            (kegs if product.is_sold_by_volume else bottles).append(count)
        return bottles, kegs

    async def check_keg_headcounts(self, session: CountSession, counts: Sequence[Count]) -> List[KegHeadcountCheck]:
        checks = []
        for count in counts:
            kegs = await self.store.get_keg_records(count.product_id, session.mode_tag)
            check = KegHeadcountCheck(
                product_id=count.product_id,
                counted_on_deck=count.backup_units,
                recorded_on_deck=recorded_on_deck(kegs),
            )
            if check.mismatch:
                logger.warning(
                    "on-deck keg headcount mismatch",
                    extra={
                        "session_id": session.id,
                        "product_id": count.product_id,
                        "counted": check.counted_on_deck,
                        "recorded": check.recorded_on_deck,
                    },
                )
            checks.append(check)
        return checks

    async def reconcile(self, session: CountSession) -> ReconciliationOutcome:
        counts = await self.repo.list_counts(session.id)
        bottle_counts, keg_counts = await self._split_counts(counts)
        outcome = ReconciliationOutcome(keg_checks=await self.check_keg_headcounts(session, keg_counts))

        stored = await self.store.get_applied_batch(session.id)
        if stored is not None:
            # stock already carries this session; report what was written then
            logger.warning("stock batch was already applied", extra={"session_id": session.id})
            outcome.products = stored
            outcome.already_applied = True
            return outcome

        stocks: Dict[UUID, Optional[StockRecord]] = {}
        for count in bottle_counts:
            stocks[count.product_id] = await self.store.get_stock(count.product_id, session.mode_tag)

        for attempt in range(1, self.max_attempts + 1):
            outcome.attempts = attempt
            planned = [plan_product(session, c, stocks[c.product_id]) for c in bottle_counts]
            writes = [w for w, _ in planned]
            try:
                applied = await self.store.apply_stock_batch(
                    writes, session.mode_tag, batch_id=session.id, plan=[r for _, r in planned]
                )
            except StockVersionConflict as e:
                logger.info(
                    "stock moved during reconciliation, retrying",
                    extra={"session_id": session.id, "attempt": attempt, "product_ids": e.product_ids},
                )
                for product_id in e.product_ids:
                    stocks[product_id] = await self.store.get_stock(product_id, session.mode_tag)
                continue

            if applied:
                outcome.products = [r for _, r in planned]
            else:
                # a concurrent completion applied it between our check and the write
                logger.warning("stock batch was already applied", extra={"session_id": session.id})
                outcome.products = await self.store.get_applied_batch(session.id) or []
                outcome.already_applied = True

            conflicted = [r.product_id for r in outcome.products if r.reconciled_with_conflict]
            if conflicted:
                logger.warning(
                    "reconciled with concurrent stock changes",
                    extra={"session_id": session.id, "product_ids": conflicted},
                )
            residues = {str(r.product_id): r.rounding_residue for r in outcome.products if r.rounding_residue}
            if residues:
                logger.warning("reconciled totals rounded to whole units", extra={"session_id": session.id, "residues": residues})
            return outcome

        raise StockContention(session.id, self.max_attempts)
