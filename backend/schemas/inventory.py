from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from counting.models import VarianceItem


ModeTagName = Literal["production", "simulation"]


class SessionStartRequest(BaseModel):
    zone_id: UUID
    mode_tag: Optional[ModeTagName] = None


class CountCreate(BaseModel):
    product_id: UUID
    backup_units: int = 0
    partial_fraction: Optional[float] = None
    partial_ml: Optional[float] = None
    expected_units: Optional[float] = None
    observed_at: Optional[datetime] = None
    is_manual_estimate: bool = False
    idempotency_key: Optional[str] = None

    @field_validator("idempotency_key")
    @classmethod
    def _strip_nullable(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def observation(self) -> dict:
        # range checks happen in the engine so online and offline writes share them
        return self.model_dump(exclude={"product_id", "idempotency_key"}, exclude_none=True)


class SessionRead(BaseModel):
    id: UUID
    actor_id: UUID
    zone_id: UUID
    mode_tag: ModeTagName
    status: Literal["in_progress", "completed", "cancelled"]
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CountRead(BaseModel):
    session_id: UUID
    product_id: UUID
    backup_units: int
    partial_fraction: float
    expected_units: Optional[float] = None
    observed_at: datetime
    is_manual_estimate: bool = False
    revision: int


class SessionDetail(BaseModel):
    session: SessionRead
    counts: List[CountRead] = Field(default_factory=list)


class VarianceReport(BaseModel):
    session_id: UUID
    items: List[VarianceItem]
    summary: dict


class TappedKegRead(BaseModel):
    keg_id: UUID
    tap_id: Optional[str] = None
    fill_fraction: Optional[float] = None
    needs_manual_entry: bool = False


class KegSummaryRead(BaseModel):
    product_id: UUID
    tapped: List[TappedKegRead]
    on_deck_count: int
    total_keg_equivalent: float
