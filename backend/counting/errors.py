"""Errors raised by the counting engine.

Validation and session-state misuse are hard failures. Unavailability
(store, keg sensors) is retryable or reported as a warning.
"""

from typing import Iterable, Optional
from uuid import UUID


class CountingError(Exception):
    """Base class for counting engine errors."""


class SessionNotFound(CountingError):
    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ZoneNotFound(CountingError):
    def __init__(self, zone_id: UUID):
        self.zone_id = zone_id
        super().__init__(f"Zone {zone_id} not found")


class SessionConflict(CountingError):
    """A session is already in progress for this actor and mode."""

    def __init__(self, existing):
        self.existing = existing
        super().__init__(
            f"Actor {existing.actor_id} already has session {existing.id} in progress "
            f"({existing.mode_tag.value})"
        )


class SessionNotActive(CountingError):
    def __init__(self, session_id: UUID, status):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is {getattr(status, 'value', status)}, not in_progress")


class StaleSession(SessionNotActive):
    """An offline replay targets a session that is no longer in progress."""


class InvalidObservation(CountingError):
    def __init__(self, message: str, product_id: Optional[UUID] = None):
        self.product_id = product_id
        super().__init__(message)


class UnknownProduct(InvalidObservation):
    def __init__(self, product_id: UUID):
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class StoreUnavailable(CountingError):
    """The stock store could not be reached or refused the batch. Retryable."""


class StockVersionConflict(StoreUnavailable):
    """Compare-and-swap failed: stock moved since it was read."""

    def __init__(self, product_ids: Iterable[UUID]):
        self.product_ids = list(product_ids)
        super().__init__(f"Stock changed underneath batch for products: {self.product_ids}")


class StockContention(StoreUnavailable):
    """Reconciliation gave up after repeated compare-and-swap failures."""

    def __init__(self, session_id: UUID, attempts: int):
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(f"Stock for session {session_id} kept changing after {attempts} attempts")


class KegObserverUnavailable(CountingError):
    def __init__(self, tap_id: str, reason: str = "unavailable"):
        self.tap_id = tap_id
        super().__init__(f"Keg level for tap {tap_id}: {reason}")
