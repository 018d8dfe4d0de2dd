"""Collaborators the counting engine talks to. All calls may suspend."""

from typing import List, Optional, Protocol, Sequence
from uuid import UUID

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
)


class Store(Protocol):
    """Live stock, shared with receiving and POS sync."""

    async def get_stock(self, product_id: UUID, mode_tag: ModeTag) -> Optional[StockRecord]:
        ...

    async def apply_stock_batch(
        self,
        writes: Sequence[StockWrite],
        mode_tag: ModeTag,
        batch_id: UUID,
        plan: Sequence[ProductReconciliation] = (),
    ) -> bool:
        """Apply all writes or none, storing ``plan`` with the batch.

        Returns False if ``batch_id`` was already applied (nothing written).
        Raises StockVersionConflict if any record moved past its
        ``expected_last_modified_at``, StoreUnavailable on any other failure.
        """
        ...

    async def get_applied_batch(self, batch_id: UUID) -> Optional[List[ProductReconciliation]]:
        """The plan stored when ``batch_id`` was applied, or None if it never was."""
        ...

    async def get_keg_records(self, product_id: UUID, mode_tag: ModeTag) -> List[KegRecord]:
        ...


class ProductResolver(Protocol):
    async def get_product_type(self, product_id: UUID) -> Optional[ProductType]:
        ...


class KegLevelObserver(Protocol):
    async def current_fill_fraction(self, tap_id: str) -> Optional[float]:
        """Fill fraction 0..1, or None when the sensor has no reading."""
        ...


class SessionRepository(Protocol):
    """Sessions and counts. Append-only apart from status transitions."""

    async def get_zone(self, zone_id: UUID) -> Optional[Zone]:
        ...

    async def create_session(self, session: CountSession) -> CountSession:
        """Raises SessionConflict if (actor, mode) already has a session in progress."""
        ...

    async def get_session(self, session_id: UUID) -> Optional[CountSession]:
        ...

    async def get_active_session(self, actor_id: UUID, mode_tag: ModeTag) -> Optional[CountSession]:
        ...

    async def list_sessions(self, mode_tag: ModeTag) -> List[CountSession]:
        ...

    async def transition(
        self,
        session_id: UUID,
        from_status: SessionStatus,
        to_status: SessionStatus,
        result: Optional[CompletionResult] = None,
    ) -> Optional[CountSession]:
        """Move a session between statuses; None if it was no longer in ``from_status``."""
        ...

    async def get_completion(self, session_id: UUID) -> Optional[CompletionResult]:
        ...

    async def get_count(self, session_id: UUID, product_id: UUID) -> Optional[Count]:
        ...

    async def find_count_by_key(self, session_id: UUID, idempotency_key: str) -> Optional[Count]:
        """Any revision (current or superseded) recorded with this key."""
        ...

    async def save_count(self, count: Count, supersede: bool) -> Count:
        """Append a revision; make it current only when ``supersede`` is true.

        Checks the session is still in progress atomically with the write and
        raises SessionNotActive (or SessionNotFound) otherwise.
        """
        ...

    async def list_counts(self, session_id: UUID) -> List[Count]:
        ...

    async def count_history(self, session_id: UUID, product_id: UUID) -> List[Count]:
        ...
