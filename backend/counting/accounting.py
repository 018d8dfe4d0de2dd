"""
Bottles and kegs are counted from different sources of truth and are kept
apart until reconciliation:

- bottles/cans: a manual count of sealed units plus one open container
- kegs: an on-deck headcount plus sensor fill levels of the tapped kegs
"""

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union
from uuid import UUID

from core.logging_config import get_logger

from .errors import InvalidObservation, KegObserverUnavailable
from .interfaces import KegLevelObserver
from .models import Count, CountObservation, KegRecord, KegStatus, ProductType

logger = get_logger(__name__)


@dataclass(frozen=True)
class BottleAccounting:
    product_id: UUID
    container_size_ml: int
    sealed_units: int
    open_volume_ml: float
    open_fraction: float

    @property
    def total(self) -> float:
        return self.sealed_units + self.open_fraction


@dataclass(frozen=True)
class TappedKegReading:
    keg_id: UUID
    tap_id: Optional[str]
    fill_fraction: Optional[float]  # None = not observed, needs manual entry

    @property
    def observed(self) -> bool:
        return self.fill_fraction is not None


@dataclass(frozen=True)
class KegAccounting:
    product_id: UUID
    on_deck_count: int
    tapped: Tuple[TappedKegReading, ...] = ()

    @property
    def keg_equivalent(self) -> float:
        return self.on_deck_count + sum(t.fill_fraction for t in self.tapped if t.observed)

    @property
    def skipped(self) -> Tuple[TappedKegReading, ...]:
        return tuple(t for t in self.tapped if not t.observed)

    @property
    def needs_manual_entry(self) -> bool:
        return bool(self.skipped)

    @property
    def total(self) -> float:
        return self.keg_equivalent


ProductAccounting = Union[BottleAccounting, KegAccounting]


def partial_fraction_for(observation: CountObservation, product: ProductType) -> float:
    """Open-container fraction of an observation, validated against the product class."""
    if product.is_sold_by_volume:
        if observation.has_partial:
            raise InvalidObservation(
                "Tapped keg levels come from the tap sensor and cannot be entered by hand",
                product_id=product.product_id,
            )
        return 0.0

    if observation.partial_ml is not None:
        size = product.container_size_ml
        if size <= 0:
            raise InvalidObservation("Product has no container size", product_id=product.product_id)
        if observation.partial_ml > size:
            raise InvalidObservation(
                f"Open container of {observation.partial_ml}ml exceeds {size}ml bottle",
                product_id=product.product_id,
            )
        return observation.partial_ml / size
    return observation.partial_fraction or 0.0


def translate_bottle(product: ProductType, count: Count) -> BottleAccounting:
    open_volume_ml = count.partial_fraction * product.container_size_ml
    open_fraction = open_volume_ml / product.container_size_ml if product.container_size_ml else count.partial_fraction
    return BottleAccounting(
        product_id=product.product_id,
        container_size_ml=product.container_size_ml,
        sealed_units=count.backup_units,
        open_volume_ml=open_volume_ml,
        open_fraction=open_fraction,
    )


async def _read_fill(observer: KegLevelObserver, keg: KegRecord) -> Optional[float]:
    if not keg.tap_id:
        logger.warning("tapped keg has no tap mapping", extra={"keg_id": keg.id})
        return None
    try:
        fill = await observer.current_fill_fraction(keg.tap_id)
    except (KegObserverUnavailable, OSError, asyncio.TimeoutError) as e:
        logger.warning("keg level unavailable", extra={"keg_id": keg.id, "tap_id": keg.tap_id, "error": str(e)})
        return None
    if fill is None:
        return None
    if not 0.0 <= fill <= 1.0:
        logger.warning("keg level out of range", extra={"keg_id": keg.id, "tap_id": keg.tap_id, "fill": fill})
        return None
    return float(fill)


async def read_tapped_kegs(kegs: Iterable[KegRecord], observer: KegLevelObserver) -> Tuple[TappedKegReading, ...]:
    readings = []
    for keg in kegs:
        if keg.status != KegStatus.TAPPED:
            continue
        fill = await _read_fill(observer, keg)
        readings.append(TappedKegReading(keg_id=keg.id, tap_id=keg.tap_id, fill_fraction=fill))
    return tuple(readings)


async def translate_keg(
    product: ProductType,
    on_deck_count: int,
    kegs: Sequence[KegRecord],
    observer: KegLevelObserver,
) -> KegAccounting:
    return KegAccounting(
        product_id=product.product_id,
        on_deck_count=on_deck_count,
        tapped=await read_tapped_kegs(kegs, observer),
    )


async def translate(
    product: ProductType,
    count: Count,
    kegs: Sequence[KegRecord],
    observer: KegLevelObserver,
) -> ProductAccounting:
    if product.is_sold_by_volume:
        return await translate_keg(product, count.backup_units, kegs, observer)
    return translate_bottle(product, count)


def recorded_on_deck(kegs: Iterable[KegRecord]) -> int:
    return sum(1 for k in kegs if k.status == KegStatus.ON_DECK)


def recorded_keg_equivalent(kegs: Sequence[KegRecord], observed_keg_ids: Optional[set] = None) -> float:
    """Keg equivalent according to the keg records.

    When ``observed_keg_ids`` is given only those tapped kegs contribute, so a
    skipped sensor reading does not show up as variance.
    """
    tapped = sum(
        k.recorded_fill
        for k in kegs
        if k.status == KegStatus.TAPPED and (observed_keg_ids is None or k.id in observed_keg_ids)
    )
    return recorded_on_deck(kegs) + tapped
