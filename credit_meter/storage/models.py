"""
Data models for storage layer.

Defines the ledger and cache entities persisted by the repositories.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one billed operation.

    Append-only events that form the auditable credit ledger.
    Cache hits never produce a record. Once written, these records
    must never be modified.
    """
    operation_kind: str
    timestamp: datetime
    credits_consumed: int
    feature_id: str
    actor_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    record_id: Optional[int] = None

    @property
    def month_key(self) -> str:
        return month_key_for(self.timestamp)


@dataclass(frozen=True)
class MonthlyAggregate:
    """Running consumption counter for one calendar month (UTC).

    ``reserved`` holds credits admitted for in-flight operations that have
    not yet been billed; it is not part of ``total_consumed``.
    """
    month_key: str
    total_consumed: int = 0
    reserved: int = 0
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class CacheEntry:
    """Memoized generation result keyed by its request fingerprint."""
    fingerprint: str
    result: Dict[str, Any]
    kind: str
    variant: str
    created_at: datetime
    access_count: int = 1
    last_accessed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScopedResult:
    """Denormalized copy of a result stored under a caller scope."""
    scope: str
    item_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    stored_at: Optional[datetime] = None


def month_key_for(moment: datetime) -> str:
    """Calendar month key (``YYYY-MM``) for a timestamp."""
    return f"{moment.year:04d}-{moment.month:02d}"
