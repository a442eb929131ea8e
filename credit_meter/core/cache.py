"""
Content-addressed result cache.

Maps request fingerprints to previously generated results. The cache is
strictly best-effort: storage failures degrade to a miss on read and to
"not cached" on write, and are logged rather than raised.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from credit_meter.storage.models import CacheEntry
from credit_meter.storage.repository import CacheRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EvictionPolicy:
    """Age and capacity bounds for cache entries.

    Either bound may be None to disable it.
    """
    max_age_days: Optional[int] = None
    max_entries: Optional[int] = None

    def __post_init__(self):
        if self.max_age_days is not None and self.max_age_days <= 0:
            raise ValueError("max_age_days must be > 0")
        if self.max_entries is not None and self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache size and hit counters."""
    entries: int
    total_accesses: int


class ResultCache:
    """Fingerprint-keyed cache of generation results."""

    def __init__(
        self,
        repository: CacheRepository,
        eviction: Optional[EvictionPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.eviction = eviction
        self._clock = clock

    def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        """Return the cached entry for a fingerprint, or None on miss.

        A hit also bumps the entry's access count and last-access time.
        That bookkeeping is best-effort and never fails the lookup.
        """
        try:
            entry = self.repository.get(fingerprint)
        except Exception as e:
            logger.warning(
                "cache_lookup_failed",
                fingerprint=fingerprint,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if entry is None:
            logger.debug("cache_miss", fingerprint=fingerprint)
            return None

        self._record_access(fingerprint)
        logger.info("cache_hit", fingerprint=fingerprint, kind=entry.kind)
        return entry

    def store(self, fingerprint: str, result: Dict[str, Any], kind: str, variant: str) -> bool:
        """Store a result under its fingerprint, overwriting any previous one.

        Returns:
            True if the entry was written, False if the write failed
        """
        now = self._clock()
        entry = CacheEntry(
            fingerprint=fingerprint,
            result=result,
            kind=kind,
            variant=variant,
            created_at=now,
            access_count=1,
            last_accessed_at=now,
        )
        try:
            self.repository.put(entry)
        except Exception as e:
            logger.warning(
                "cache_store_failed",
                fingerprint=fingerprint,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        logger.info("cache_stored", fingerprint=fingerprint, kind=kind, variant=variant)
        return True

    def evict(self, now: Optional[datetime] = None) -> int:
        """Apply the eviction policy.

        Entries not accessed within ``max_age_days`` go first, then the
        least recently accessed entries beyond ``max_entries``.

        Returns:
            Number of entries removed
        """
        if self.eviction is None:
            return 0
        now = now or self._clock()
        removed = 0
        if self.eviction.max_age_days is not None:
            cutoff = now - timedelta(days=self.eviction.max_age_days)
            removed += self.repository.delete_accessed_before(cutoff)
        if self.eviction.max_entries is not None:
            removed += self.repository.trim_to(self.eviction.max_entries)
        logger.info("cache_evicted", removed=removed)
        return removed

    def stats(self) -> CacheStats:
        raw = self.repository.stats()
        return CacheStats(entries=raw["entries"], total_accesses=raw["total_accesses"])

    def _record_access(self, fingerprint: str) -> None:
        try:
            self.repository.touch(fingerprint, self._clock())
        except Exception as e:
            logger.warning(
                "cache_access_update_failed",
                fingerprint=fingerprint,
                error=str(e),
                error_type=type(e).__name__,
            )
