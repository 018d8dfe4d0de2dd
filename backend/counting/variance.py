from typing import Iterable, List, Optional
from uuid import UUID

from core.config import settings

from .accounting import recorded_keg_equivalent, translate_keg
from .errors import UnknownProduct
from .models import Severity, VarianceItem

_EPSILON = 1e-9


def classify(
    expected: float,
    counted: float,
    large_units: Optional[float] = None,
    large_ratio: Optional[float] = None,
) -> Severity:
    large_units = settings.large_variance_units if large_units is None else large_units
    large_ratio = settings.large_variance_ratio if large_ratio is None else large_ratio

    delta = counted - expected
    if abs(delta) <= _EPSILON:
        return Severity.NONE
    if abs(delta) > large_units + _EPSILON:
        return Severity.LARGE
    if expected <= _EPSILON:
        # anything found where nothing was expected
        return Severity.LARGE if counted > 0 else Severity.MINOR
    if abs(delta) / expected > large_ratio + _EPSILON:
        return Severity.LARGE
    return Severity.MINOR


def variance_item(
    product_id: UUID,
    expected: Optional[float],
    counted: float,
    large_units: Optional[float] = None,
    large_ratio: Optional[float] = None,
) -> VarianceItem:
    expected = expected or 0.0
    return VarianceItem(
        product_id=product_id,
        expected=expected,
        counted=counted,
        delta=round(counted - expected, 6),
        severity=classify(expected, counted, large_units, large_ratio),
    )


def summarize(items: Iterable[VarianceItem]) -> dict:
    out = {s.value: 0 for s in Severity}
    for item in items:
        out[item.severity.value] += 1
    return out


def large_variances(items: Iterable[VarianceItem]) -> List[VarianceItem]:
    return [i for i in items if i.severity == Severity.LARGE]


class VarianceReporter:
    """Collects a session's counts and classifies them for operator review. Writes nothing."""

    def __init__(self, repo, store, products, observer):
        self.repo = repo
        self.store = store
        self.products = products
        self.observer = observer

    async def review(self, session) -> List[VarianceItem]:
        items = []
        for count in await self.repo.list_counts(session.id):
            product = await self.products.get_product_type(count.product_id)
            if product is None:
                raise UnknownProduct(count.product_id)
            if product.is_sold_by_volume:
                kegs = await self.store.get_keg_records(count.product_id, session.mode_tag)
                acct = await translate_keg(product, count.backup_units, kegs, self.observer)
                observed_ids = {t.keg_id for t in acct.tapped if t.observed}
                items.append(variance_item(count.product_id, recorded_keg_equivalent(kegs, observed_ids), acct.keg_equivalent))
            else:
                items.append(variance_item(count.product_id, count.expected_units, count.observed_total))
        return items
