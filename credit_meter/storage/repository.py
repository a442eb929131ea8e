"""
Repository pattern for data access.

Handles database operations for the credit ledger, the result cache and
scoped result copies. Multi-statement writes run inside ``BEGIN IMMEDIATE``
transactions so the conditional updates are atomic across processes.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import CacheEntry, MonthlyAggregate, ScopedResult, UsageRecord


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``usage_record`` is an append-only ledger: no UPDATE or DELETE
    operations are ever performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_kind TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                credits_consumed INTEGER NOT NULL,
                feature_id TEXT NOT NULL,
                actor_id TEXT,
                metadata TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_usage_record_timestamp
                ON usage_record (timestamp);

            CREATE TABLE IF NOT EXISTS monthly_aggregate (
                month_key TEXT PRIMARY KEY,
                total_consumed INTEGER NOT NULL DEFAULT 0,
                reserved INTEGER NOT NULL DEFAULT 0,
                last_updated TEXT
            );

            CREATE TABLE IF NOT EXISTS credit_hold (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                month_key TEXT NOT NULL,
                credits INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_credit_hold_created_at
                ON credit_hold (created_at);

            CREATE TABLE IF NOT EXISTS cache_entry (
                fingerprint TEXT PRIMARY KEY,
                result TEXT NOT NULL,
                kind TEXT NOT NULL,
                variant TEXT NOT NULL,
                created_at TEXT NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 1,
                last_accessed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scoped_result (
                scope TEXT NOT NULL,
                item_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (scope, item_id)
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _to_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _from_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    return json.loads(raw)


def _parse_time(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


_USAGE_COLUMNS = (
    "id, operation_kind, timestamp, credits_consumed, feature_id, actor_id, metadata"
)


def _row_to_usage(row: Tuple) -> UsageRecord:
    return UsageRecord(
        record_id=row[0],
        operation_kind=row[1],
        timestamp=datetime.fromisoformat(row[2]),
        credits_consumed=row[3],
        feature_id=row[4],
        actor_id=row[5],
        metadata=_from_json(row[6]),
    )


class LedgerRepository:
    """Storage for usage records and monthly aggregates.

    The aggregate row for a month is created lazily by the first write
    that touches it. Counters are only changed with in-database arithmetic,
    never by read-modify-write in Python.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_aggregate(self, month_key: str) -> MonthlyAggregate:
        """Return the aggregate for a month, or an empty one if none exists."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT month_key, total_consumed, reserved, last_updated "
                "FROM monthly_aggregate WHERE month_key = ?",
                (month_key,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return MonthlyAggregate(month_key=month_key)
        return MonthlyAggregate(
            month_key=row[0],
            total_consumed=row[1],
            reserved=row[2],
            last_updated=_parse_time(row[3]),
        )

    def append_usage(self, record: UsageRecord) -> UsageRecord:
        """Append a usage record and add its credits to the month aggregate.

        Both writes commit in a single transaction.

        Returns:
            The stored record with its ``record_id`` populated
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            stored = self._insert_usage(conn, record)
            self._increment_consumed(conn, record)
            conn.commit()
            return stored
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def try_reserve(
        self,
        month_key: str,
        credits: int,
        limit: int,
        now: datetime,
        stale_before: Optional[datetime] = None,
    ) -> Tuple[Optional[int], MonthlyAggregate]:
        """Conditionally hold ``credits`` against the month's allowance.

        The hold succeeds only if ``total_consumed + reserved + credits``
        stays within ``limit``. Holds created before ``stale_before`` are
        expired first, in the same transaction.

        Returns:
            Tuple of (hold id or None if refused, aggregate state after the attempt)
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            if stale_before is not None:
                self._expire_holds(conn, stale_before, now)
            conn.execute(
                "INSERT OR IGNORE INTO monthly_aggregate "
                "(month_key, total_consumed, reserved, last_updated) VALUES (?, 0, 0, ?)",
                (month_key, now.isoformat()),
            )
            cursor = conn.execute(
                """
                UPDATE monthly_aggregate
                SET reserved = reserved + ?, last_updated = ?
                WHERE month_key = ? AND total_consumed + reserved + ? <= ?
                """,
                (credits, now.isoformat(), month_key, credits, limit),
            )
            hold_id = None
            if cursor.rowcount == 1:
                hold_id = conn.execute(
                    "INSERT INTO credit_hold (month_key, credits, created_at) VALUES (?, ?, ?)",
                    (month_key, credits, now.isoformat()),
                ).lastrowid
            row = conn.execute(
                "SELECT total_consumed, reserved, last_updated "
                "FROM monthly_aggregate WHERE month_key = ?",
                (month_key,),
            ).fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return hold_id, MonthlyAggregate(
            month_key=month_key,
            total_consumed=row[0],
            reserved=row[1],
            last_updated=_parse_time(row[2]),
        )

    def commit_reserved(self, record: UsageRecord, hold_id: int) -> UsageRecord:
        """Bill a previously reserved operation.

        Appends the record, adds its credits to the aggregate of the
        record's month and drops the hold, all in one transaction. A hold
        that has already expired is not released twice; the record is
        still billed.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            stored = self._insert_usage(conn, record)
            self._increment_consumed(conn, record)
            self._drop_hold(conn, hold_id, record.timestamp)
            conn.commit()
            return stored
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def release_reserved(self, hold_id: int, now: datetime) -> bool:
        """Drop a hold without billing anything.

        Returns:
            True if the hold was still outstanding
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            released = self._drop_hold(conn, hold_id, now)
            conn.commit()
            return released
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def expire_holds(self, stale_before: datetime, now: datetime) -> int:
        """Release every hold created before ``stale_before``.

        Returns:
            Number of holds expired
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            expired = self._expire_holds(conn, stale_before, now)
            conn.commit()
            return expired
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def sum_usage(self, month_key: str) -> int:
        """Sum credits over all usage records timestamped in a month."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT SUM(credits_consumed) FROM usage_record "
                "WHERE substr(timestamp, 1, 7) = ?",
                (month_key,),
            ).fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    def rebuild_aggregate(self, month_key: str, now: datetime) -> MonthlyAggregate:
        """Recompute a month's aggregate from the usage log and open holds."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            consumed = conn.execute(
                "SELECT SUM(credits_consumed) FROM usage_record "
                "WHERE substr(timestamp, 1, 7) = ?",
                (month_key,),
            ).fetchone()
            held = conn.execute(
                "SELECT SUM(credits) FROM credit_hold WHERE month_key = ?",
                (month_key,),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO monthly_aggregate (month_key, total_consumed, reserved, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(month_key) DO UPDATE SET
                    total_consumed = excluded.total_consumed,
                    reserved = excluded.reserved,
                    last_updated = excluded.last_updated
                """,
                (month_key, int(consumed[0] or 0), int(held[0] or 0), now.isoformat()),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return self.get_aggregate(month_key)

    def fetch_recent(
        self, limit: int = 100, operation_kind: Optional[str] = None
    ) -> List[UsageRecord]:
        """Fetch usage records, newest first.

        Args:
            limit: Maximum number of records to return
            operation_kind: Optional filter for a specific operation kind

        Returns:
            List of usage records ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_USAGE_COLUMNS} FROM usage_record"
            params: List[Any] = []
            if operation_kind:
                query += " WHERE operation_kind = ?"
                params.append(operation_kind)
            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)
            return [_row_to_usage(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    @staticmethod
    def _insert_usage(conn, record: UsageRecord) -> UsageRecord:
        cursor = conn.execute(
            """
            INSERT INTO usage_record
            (operation_kind, timestamp, credits_consumed, feature_id, actor_id, metadata)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.operation_kind,
                record.timestamp.isoformat(),
                record.credits_consumed,
                record.feature_id,
                record.actor_id,
                _to_json(record.metadata),
            ),
        )
        return UsageRecord(
            operation_kind=record.operation_kind,
            timestamp=record.timestamp,
            credits_consumed=record.credits_consumed,
            feature_id=record.feature_id,
            actor_id=record.actor_id,
            metadata=record.metadata,
            record_id=cursor.lastrowid,
        )

    @staticmethod
    def _increment_consumed(conn, record: UsageRecord) -> None:
        conn.execute(
            """
            INSERT INTO monthly_aggregate (month_key, total_consumed, reserved, last_updated)
            VALUES (?, ?, 0, ?)
            ON CONFLICT(month_key) DO UPDATE SET
                total_consumed = total_consumed + excluded.total_consumed,
                last_updated = excluded.last_updated
            """,
            (record.month_key, record.credits_consumed, record.timestamp.isoformat()),
        )

    @staticmethod
    def _decrement_reserved(conn, month_key: str, credits: int, now: datetime) -> None:
        conn.execute(
            """
            UPDATE monthly_aggregate
            SET reserved = MAX(reserved - ?, 0), last_updated = ?
            WHERE month_key = ?
            """,
            (credits, now.isoformat(), month_key),
        )

    @classmethod
    def _drop_hold(cls, conn, hold_id: int, now: datetime) -> bool:
        row = conn.execute(
            "SELECT month_key, credits FROM credit_hold WHERE id = ?", (hold_id,)
        ).fetchone()
        if row is None:
            return False
        conn.execute("DELETE FROM credit_hold WHERE id = ?", (hold_id,))
        cls._decrement_reserved(conn, row[0], row[1], now)
        return True

    @classmethod
    def _expire_holds(cls, conn, stale_before: datetime, now: datetime) -> int:
        rows = conn.execute(
            "SELECT id, month_key, credits FROM credit_hold WHERE created_at < ?",
            (stale_before.isoformat(),),
        ).fetchall()
        for hold_id, month_key, credits in rows:
            conn.execute("DELETE FROM credit_hold WHERE id = ?", (hold_id,))
            cls._decrement_reserved(conn, month_key, credits, now)
        return len(rows)


class CacheRepository:
    """Storage for memoized generation results."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT fingerprint, result, kind, variant, created_at,
                       access_count, last_accessed_at
                FROM cache_entry WHERE fingerprint = ?
                """,
                (fingerprint,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return CacheEntry(
            fingerprint=row[0],
            result=json.loads(row[1]),
            kind=row[2],
            variant=row[3],
            created_at=datetime.fromisoformat(row[4]),
            access_count=row[5],
            last_accessed_at=_parse_time(row[6]),
        )

    def put(self, entry: CacheEntry) -> None:
        """Insert or overwrite an entry (last writer wins)."""
        last_accessed = entry.last_accessed_at or entry.created_at
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO cache_entry
                (fingerprint, result, kind, variant, created_at, access_count, last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    result = excluded.result,
                    kind = excluded.kind,
                    variant = excluded.variant,
                    created_at = excluded.created_at,
                    access_count = excluded.access_count,
                    last_accessed_at = excluded.last_accessed_at
                """,
                (
                    entry.fingerprint,
                    _to_json(entry.result),
                    entry.kind,
                    entry.variant,
                    entry.created_at.isoformat(),
                    entry.access_count,
                    last_accessed.isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def touch(self, fingerprint: str, now: datetime) -> bool:
        """Count one more hit for an entry. Returns False if it is gone."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE cache_entry
                SET access_count = access_count + 1, last_accessed_at = ?
                WHERE fingerprint = ?
                """,
                (now.isoformat(), fingerprint),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def delete_accessed_before(self, cutoff: datetime) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM cache_entry WHERE last_accessed_at < ?",
                (cutoff.isoformat(),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def trim_to(self, max_entries: int) -> int:
        """Delete least recently accessed entries beyond ``max_entries``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                DELETE FROM cache_entry WHERE fingerprint IN (
                    SELECT fingerprint FROM cache_entry
                    ORDER BY last_accessed_at DESC, fingerprint
                    LIMIT -1 OFFSET ?
                )
                """,
                (max_entries,),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def stats(self) -> Dict[str, int]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*), SUM(access_count) FROM cache_entry"
            ).fetchone()
            return {"entries": row[0] or 0, "total_accesses": int(row[1] or 0)}
        finally:
            conn.close()


class ScopedResultRepository:
    """Storage for per-scope copies of results (e.g. an actor's history)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def put(self, scope: str, item_id: str, payload: Dict[str, Any], now: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO scoped_result (scope, item_id, payload, stored_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(scope, item_id) DO UPDATE SET
                    payload = excluded.payload,
                    stored_at = excluded.stored_at
                """,
                (scope, item_id, _to_json(payload), now.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def list(self, scope: str, limit: int = 100) -> List[ScopedResult]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT scope, item_id, payload, stored_at FROM scoped_result
                WHERE scope = ? ORDER BY stored_at DESC LIMIT ?
                """,
                (scope, limit),
            ).fetchall()
        finally:
            conn.close()
        return [
            ScopedResult(
                scope=row[0],
                item_id=row[1],
                payload=json.loads(row[2]),
                stored_at=_parse_time(row[3]),
            )
            for row in rows
        ]
