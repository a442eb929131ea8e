"""
Credit budget ledger.

Tracks consumption against a process-wide monthly allowance and answers
admission-control queries.

Admission modes:
1. STRICT - admission is a conditional reservation on the month aggregate,
   so concurrent requests can never jointly overspend the allowance
2. OPTIMISTIC - admission is a plain read of current usage; concurrent
   requests may each pass against the same snapshot and overspend

Uncertainty always denies: if usage cannot be read, the request is refused.
"""

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from credit_meter.storage.models import MonthlyAggregate, UsageRecord, month_key_for
from credit_meter.storage.repository import LedgerRepository

from .errors import InsufficientCreditsError, LedgerWriteError
from .pricing import MONTHLY_CREDIT_LIMIT

logger = structlog.get_logger(__name__)

# Holds older than this are assumed orphaned by a crashed process
DEFAULT_RESERVATION_TTL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdmissionMode(Enum):
    """How admission checks interact with concurrent requests."""
    STRICT = "strict"
    OPTIMISTIC = "optimistic"


@dataclass(frozen=True)
class BudgetCheckResult:
    """Outcome of an admission check. Never persisted."""
    allowed: bool
    remaining_credits: int
    monthly_used: int
    percentage_used: float


@dataclass(frozen=True)
class Reservation:
    """Credits held for an in-flight operation in STRICT mode."""
    month_key: str
    credits: int
    created_at: datetime
    hold_id: Optional[int] = None


@dataclass(frozen=True)
class UsageSummary:
    """Consumption snapshot for the current month."""
    monthly_used: int
    monthly_limit: int
    remaining: int
    percentage_used: float
    estimated_days_remaining: int


class BudgetLedger:
    """Monthly credit ledger backed by an append-only usage log.

    The month aggregate is the source of truth for current usage. It is
    updated in the same transaction as each usage record append, and
    ``reconcile`` rebuilds it from the log if the two ever drift.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        monthly_limit: int = MONTHLY_CREDIT_LIMIT,
        admission: AdmissionMode = AdmissionMode.STRICT,
        clock: Callable[[], datetime] = _utcnow,
        reservation_ttl: Optional[timedelta] = DEFAULT_RESERVATION_TTL,
    ):
        if monthly_limit <= 0:
            raise ValueError("monthly_limit must be > 0")
        if reservation_ttl is not None and reservation_ttl <= timedelta(0):
            raise ValueError("reservation_ttl must be positive")
        self.repository = repository
        self.monthly_limit = monthly_limit
        self.admission = admission
        self.reservation_ttl = reservation_ttl
        self._clock = clock

    def current_month_key(self) -> str:
        return month_key_for(self._clock())

    def current_month_usage(self) -> int:
        """Credits consumed so far in the current calendar month.

        If usage cannot be read the allowance is reported as fully
        consumed, never as unused.
        """
        try:
            return self.repository.get_aggregate(self.current_month_key()).total_consumed
        except Exception as e:
            logger.error(
                "usage_read_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return self.monthly_limit

    def check_budget(self, requested_credits: int) -> BudgetCheckResult:
        """Check whether ``requested_credits`` fit in the remaining allowance.

        Credits reserved by in-flight STRICT operations count against the
        remaining allowance.

        Args:
            requested_credits: Cost of the operation about to run

        Returns:
            BudgetCheckResult; denied with zero remaining if usage cannot
            be determined
        """
        if requested_credits < 0:
            raise ValueError("requested_credits must be >= 0")

        try:
            aggregate = self.repository.get_aggregate(self.current_month_key())
        except Exception as e:
            logger.error(
                "budget_check_failed",
                requested=requested_credits,
                error=str(e),
                error_type=type(e).__name__,
            )
            return BudgetCheckResult(
                allowed=False,
                remaining_credits=0,
                monthly_used=self.monthly_limit,
                percentage_used=100.0,
            )

        used = aggregate.total_consumed
        remaining = self.monthly_limit - used - aggregate.reserved
        result = BudgetCheckResult(
            allowed=requested_credits <= remaining,
            remaining_credits=remaining,
            monthly_used=used,
            percentage_used=self._percentage(used),
        )
        if not result.allowed:
            logger.warning(
                "budget_denied",
                requested=requested_credits,
                remaining=remaining,
                monthly_used=used,
            )
        return result

    def admit(self, credits: int) -> Optional[Reservation]:
        """Gate an operation costing ``credits`` according to the admission mode.

        Returns:
            A Reservation in STRICT mode, None in OPTIMISTIC mode

        Raises:
            InsufficientCreditsError: If the operation is not admitted
        """
        if self.admission == AdmissionMode.STRICT:
            return self.reserve(credits)

        check = self.check_budget(credits)
        if not check.allowed:
            raise InsufficientCreditsError(credits, check.remaining_credits)
        return None

    def reserve(self, credits: int) -> Reservation:
        """Atomically hold ``credits`` against the current month.

        Raises:
            InsufficientCreditsError: If the hold would exceed the allowance,
                or if the ledger cannot be read (reported as 0 available)
        """
        if credits < 0:
            raise ValueError("credits must be >= 0")
        now = self._clock()
        month_key = month_key_for(now)
        try:
            hold_id, aggregate = self.repository.try_reserve(
                month_key, credits, self.monthly_limit, now, stale_before=self._stale_before(now)
            )
        except Exception as e:
            logger.error(
                "budget_reserve_failed",
                requested=credits,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise InsufficientCreditsError(credits, 0) from e

        if hold_id is None:
            available = self.monthly_limit - aggregate.total_consumed - aggregate.reserved
            logger.warning(
                "budget_denied",
                requested=credits,
                remaining=available,
                monthly_used=aggregate.total_consumed,
                reserved=aggregate.reserved,
            )
            raise InsufficientCreditsError(credits, available)

        logger.debug("credits_reserved", credits=credits, month_key=month_key)
        return Reservation(month_key=month_key, credits=credits, created_at=now, hold_id=hold_id)

    def commit(
        self,
        reservation: Reservation,
        operation_kind: str,
        feature_id: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        """Bill a reserved operation and release its hold.

        Raises:
            LedgerWriteError: If the usage record could not be appended
        """
        record = self._new_record(
            operation_kind, reservation.credits, feature_id, actor_id, metadata
        )
        try:
            stored = self.repository.commit_reserved(record, reservation.hold_id)
        except Exception as e:
            logger.error(
                "usage_record_failed",
                operation_kind=operation_kind,
                credits=reservation.credits,
                feature_id=feature_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise LedgerWriteError(f"Failed to record credit usage: {e}") from e
        self._log_recorded(stored)
        return stored

    def release(self, reservation: Reservation) -> None:
        """Return a hold without billing. Failures are logged only."""
        try:
            self.repository.release_reserved(reservation.hold_id, self._clock())
        except Exception as e:
            logger.error(
                "reservation_release_failed",
                month_key=reservation.month_key,
                credits=reservation.credits,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        logger.debug("credits_released", credits=reservation.credits)

    def settle(
        self,
        reservation: Optional[Reservation],
        operation_kind: str,
        credits_used: int,
        feature_id: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        """Bill an admitted operation, whichever mode admitted it."""
        if reservation is not None:
            return self.commit(reservation, operation_kind, feature_id, actor_id, metadata)
        return self.record_usage(operation_kind, credits_used, feature_id, actor_id, metadata)

    def record_usage(
        self,
        operation_kind: str,
        credits_used: int,
        feature_id: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        """Append a usage record and add it to the current month aggregate.

        Args:
            operation_kind: Operation tag (e.g. "image", "distillation")
            credits_used: Credits consumed, must be >= 0
            feature_id: Feature that triggered the operation
            actor_id: Optional caller identity for per-actor analytics
            metadata: Optional JSON-serializable details

        Returns:
            The stored UsageRecord

        Raises:
            LedgerWriteError: If the record could not be appended. The
                caller must not treat the operation as billed.
        """
        if credits_used < 0:
            raise ValueError("credits_used must be >= 0")
        record = self._new_record(operation_kind, credits_used, feature_id, actor_id, metadata)
        try:
            stored = self.repository.append_usage(record)
        except Exception as e:
            logger.error(
                "usage_record_failed",
                operation_kind=operation_kind,
                credits=credits_used,
                feature_id=feature_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise LedgerWriteError(f"Failed to record credit usage: {e}") from e
        self._log_recorded(stored)
        return stored

    def usage_summary(self) -> UsageSummary:
        """Summarize the current month's consumption.

        ``remaining`` excludes credits held by in-flight operations, the
        same figure ``check_budget`` admits against. If usage cannot be
        read the summary reports the allowance as fully consumed.

        ``estimated_days_remaining`` extrapolates the average daily burn so
        far, capped at the calendar days left in the month. With no usage
        yet it equals the days left.
        """
        now = self._clock()
        try:
            aggregate = self.repository.get_aggregate(month_key_for(now))
        except Exception as e:
            logger.error(
                "usage_summary_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return UsageSummary(
                monthly_used=self.monthly_limit,
                monthly_limit=self.monthly_limit,
                remaining=0,
                percentage_used=100.0,
                estimated_days_remaining=0,
            )

        used = aggregate.total_consumed
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        day_of_month = now.day
        days_left = days_in_month - day_of_month

        remaining = self.monthly_limit - used - aggregate.reserved
        daily_average = used / day_of_month
        if daily_average > 0:
            estimated = math.floor(remaining / daily_average)
        else:
            estimated = days_left

        return UsageSummary(
            monthly_used=used,
            monthly_limit=self.monthly_limit,
            remaining=remaining,
            percentage_used=self._percentage(used),
            estimated_days_remaining=max(0, min(estimated, days_left)),
        )

    def expire_reservations(self) -> int:
        """Release holds older than ``reservation_ttl``.

        Holds are normally committed or released by the request that took
        them; expiry only recovers holds orphaned by a crash.

        Returns:
            Number of holds released
        """
        now = self._clock()
        stale_before = self._stale_before(now)
        if stale_before is None:
            return 0
        expired = self.repository.expire_holds(stale_before, now)
        if expired:
            logger.warning("stale_reservations_expired", count=expired)
        return expired

    def reconcile(self, month_key: Optional[str] = None) -> MonthlyAggregate:
        """Rebuild a month's aggregate from the usage log and open holds.

        Stale holds are expired first.

        Args:
            month_key: ``YYYY-MM``; defaults to the current month
        """
        month_key = month_key or self.current_month_key()
        self.expire_reservations()
        before = self.repository.get_aggregate(month_key)
        after = self.repository.rebuild_aggregate(month_key, self._clock())
        if (before.total_consumed, before.reserved) != (after.total_consumed, after.reserved):
            logger.warning(
                "aggregate_drift_corrected",
                month_key=month_key,
                before=before.total_consumed,
                after=after.total_consumed,
                reserved_before=before.reserved,
                reserved_after=after.reserved,
            )
        return after

    def recent_usage(
        self, limit: int = 100, operation_kind: Optional[str] = None
    ) -> List[UsageRecord]:
        return self.repository.fetch_recent(limit=limit, operation_kind=operation_kind)

    def _new_record(
        self,
        operation_kind: str,
        credits_used: int,
        feature_id: str,
        actor_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> UsageRecord:
        if not operation_kind:
            raise ValueError("operation_kind is required and cannot be empty")
        if not feature_id:
            raise ValueError("feature_id is required and cannot be empty")
        return UsageRecord(
            operation_kind=operation_kind,
            timestamp=self._clock(),
            credits_consumed=credits_used,
            feature_id=feature_id,
            actor_id=actor_id,
            metadata=metadata,
        )

    def _percentage(self, used: int) -> float:
        return (used / self.monthly_limit) * 100

    def _stale_before(self, now: datetime) -> Optional[datetime]:
        if self.reservation_ttl is None:
            return None
        return now - self.reservation_ttl

    @staticmethod
    def _log_recorded(record: UsageRecord) -> None:
        logger.info(
            "usage_recorded",
            operation_kind=record.operation_kind,
            credits=record.credits_consumed,
            feature_id=record.feature_id,
            actor_id=record.actor_id,
        )
