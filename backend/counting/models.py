"""
Domain types for inventory counting.

- CountSession / Count: session-scoped state owned by the engine
- StockRecord / KegRecord: live stock owned by the Store collaborator
- CountObservation: raw operator input (validated)
- VarianceItem / CompletionResult: derived reports (serializable)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModeTag(str, Enum):
    PRODUCTION = "production"
    SIMULATION = "simulation"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class KegStatus(str, Enum):
    ON_DECK = "on_deck"
    TAPPED = "tapped"
    KICKED = "kicked"


class Severity(str, Enum):
    NONE = "none"
    MINOR = "minor"
    LARGE = "large"


@dataclass(frozen=True)
class Zone:
    id: UUID
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class CountSession:
    id: UUID
    actor_id: UUID
    zone_id: UUID
    mode_tag: ModeTag
    status: SessionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS


@dataclass(frozen=True)
class ProductType:
    product_id: UUID
    is_sold_by_volume: bool
    container_size_ml: int


@dataclass(frozen=True)
class Count:
    """Current observation of one product in one session.

    For keg products ``backup_units`` is the on-deck (cooler) headcount and
    ``partial_fraction`` is always 0: tapped kegs are read from the sensor.
    """

    session_id: UUID
    product_id: UUID
    backup_units: int
    partial_fraction: float
    expected_units: Optional[float]
    observed_at: datetime
    idempotency_key: Optional[str] = None
    is_manual_estimate: bool = False
    revision: int = 1

    @property
    def observed_total(self) -> float:
        return self.backup_units + self.partial_fraction


@dataclass(frozen=True)
class StockRecord:
    product_id: UUID
    backup_count: int
    open_fraction: float
    last_modified_at: Optional[datetime]

    @property
    def total(self) -> float:
        return self.backup_count + self.open_fraction


@dataclass(frozen=True)
class KegRecord:
    id: UUID
    product_id: UUID
    status: KegStatus
    initial_volume: float
    remaining_volume: float
    tap_id: Optional[str] = None

    @property
    def recorded_fill(self) -> float:
        if not self.initial_volume:
            return 0.0
        return max(0.0, min(1.0, self.remaining_volume / self.initial_volume))


@dataclass(frozen=True)
class StockWrite:
    """One product's new stock, valid only if the record is still at ``expected_last_modified_at``."""

    product_id: UUID
    backup_count: int
    open_fraction: float
    expected_last_modified_at: Optional[datetime]


class CountObservation(BaseModel):
    """What the operator saw on the shelf.

    The open container can be given either as a fraction or in millilitres
    (converted with the product's container size).
    """

    model_config = ConfigDict(frozen=True)

    backup_units: int = Field(0, ge=0)
    partial_fraction: Optional[float] = Field(None, ge=0, le=1)
    partial_ml: Optional[float] = Field(None, ge=0)
    expected_units: Optional[float] = Field(None, ge=0)
    observed_at: Optional[datetime] = None
    is_manual_estimate: bool = False

    @field_validator("observed_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _one_partial_form(self):
        if self.partial_fraction is not None and self.partial_ml is not None:
            raise ValueError("give partial_fraction or partial_ml, not both")
        return self

    @property
    def has_partial(self) -> bool:
        return bool(self.partial_fraction) or bool(self.partial_ml)


class VarianceItem(BaseModel):
    product_id: UUID
    expected: float
    counted: float
    delta: float
    severity: Severity


class ProductReconciliation(BaseModel):
    product_id: UUID
    previous_total: float
    observed_total: float
    expected_units: float
    delta: float
    new_backup_count: int
    new_open_fraction: float
    reconciled_with_conflict: bool = False
    clamped: bool = False
    # reconciled total minus what was written (sealed + open)
    rounding_residue: float = 0.0


class KegHeadcountCheck(BaseModel):
    product_id: UUID
    counted_on_deck: int
    recorded_on_deck: int

    @computed_field
    @property
    def mismatch(self) -> bool:
        return self.counted_on_deck != self.recorded_on_deck


class CompletionResult(BaseModel):
    session_id: UUID
    completed_at: datetime
    variance: List[VarianceItem] = Field(default_factory=list)
    products: List[ProductReconciliation] = Field(default_factory=list)
    keg_checks: List[KegHeadcountCheck] = Field(default_factory=list)
    attempts: int = 1

    @computed_field
    @property
    def reconciled_with_conflict(self) -> bool:
        return any(p.reconciled_with_conflict for p in self.products)

    @property
    def keg_mismatches(self) -> List[KegHeadcountCheck]:
        return [k for k in self.keg_checks if k.mismatch]
