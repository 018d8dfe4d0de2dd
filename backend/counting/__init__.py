"""
Inventory counting and reconciliation.

Sessions collect counts without touching live stock; completing a session
reconciles the counts into the stock record.
"""

from .engine import InventoryCountEngine, mode_tag_for
from .errors import (
    CountingError,
    InvalidObservation,
    KegObserverUnavailable,
    SessionConflict,
    SessionNotActive,
    SessionNotFound,
    StaleSession,
    StockContention,
    StockVersionConflict,
    StoreUnavailable,
    UnknownProduct,
    ZoneNotFound,
)
from .models import (
    CompletionResult,
    Count,
    CountObservation,
    CountSession,
    KegRecord,
    KegStatus,
    ModeTag,
    ProductType,
    SessionStatus,
    Severity,
    StockRecord,
    VarianceItem,
    Zone,
)

__all__ = [
    "InventoryCountEngine",
    "mode_tag_for",
    "CountingError",
    "InvalidObservation",
    "KegObserverUnavailable",
    "SessionConflict",
    "SessionNotActive",
    "SessionNotFound",
    "StaleSession",
    "StockContention",
    "StockVersionConflict",
    "StoreUnavailable",
    "UnknownProduct",
    "ZoneNotFound",
    "CompletionResult",
    "Count",
    "CountObservation",
    "CountSession",
    "KegRecord",
    "KegStatus",
    "ModeTag",
    "ProductType",
    "SessionStatus",
    "Severity",
    "StockRecord",
    "VarianceItem",
    "Zone",
]
