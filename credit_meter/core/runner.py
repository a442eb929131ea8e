"""
Metered operation runner.

Runs any cacheable, credit-costing operation:
1. Fingerprint the relevant request fields
2. Return a cached result at zero cost if one exists
3. Price the operation and gate it on the budget ledger
4. Invoke the generator exactly once
5. Store the result, the scoped copy and the usage record concurrently

Cache problems never block a request, budget problems always do, and
failures after generation are logged because the caller already has its
result.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from credit_meter.storage.repository import ScopedResultRepository

from .cache import ResultCache
from .errors import GenerationError, GenerationTimeoutError, InsufficientCreditsError
from .fingerprint import Payload, fingerprint as compute_fingerprint
from .ledger import BudgetLedger

logger = structlog.get_logger(__name__)


@dataclass
class OperationContext:
    """Per-request inputs that are not part of the fingerprint.

    ``params`` carries request fields the cost and generate functions need
    (size, complexity, ...). ``scope`` names where a denormalized copy of
    the result goes, e.g. an actor's history.
    """
    feature_id: str
    actor_id: Optional[str] = None
    scope: Optional[str] = None
    variant: str = ""
    fingerprint: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationOutcome:
    """What the runner hands back for one request."""
    from_cache: bool
    result: Dict[str, Any]
    credits_used: int
    elapsed_ms: int
    fingerprint: str
    cached_at: Optional[datetime] = None


CostFn = Callable[[OperationContext], int]
GenerateFn = Callable[[OperationContext], Dict[str, Any]]
MetadataFn = Callable[[Dict[str, Any]], Dict[str, Any]]


class MeteredOperationRunner:
    """Coordinates the fingerprinter, result cache and budget ledger.

    Holds no persistent state of its own. Safe to share between threads;
    each ``execute`` call is independent.
    """

    def __init__(
        self,
        ledger: BudgetLedger,
        cache: ResultCache,
        scoped_store: Optional[ScopedResultRepository] = None,
        generation_timeout: Optional[float] = None,
        max_workers: int = 4,
    ):
        if generation_timeout is not None and generation_timeout <= 0:
            raise ValueError("generation_timeout must be > 0")
        self.ledger = ledger
        self.cache = cache
        self.scoped_store = scoped_store
        self.generation_timeout = generation_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="credit-meter"
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def execute(
        self,
        operation_kind: str,
        payload: Payload,
        cost_fn: CostFn,
        generate_fn: GenerateFn,
        context: OperationContext,
        usage_metadata_fn: Optional[MetadataFn] = None,
    ) -> OperationOutcome:
        """Run one metered operation.

        Args:
            operation_kind: Operation tag recorded in the ledger
            payload: Fields that determine the output (fingerprint input)
            cost_fn: Prices the operation from its context
            generate_fn: External generator; must return a JSON-serializable dict
            context: Request context (feature, actor, scope, params)
            usage_metadata_fn: Optional builder for usage record metadata,
                given the generated result

        Returns:
            OperationOutcome with ``credits_used == 0`` on a cache hit

        Raises:
            InsufficientCreditsError: If the ledger does not admit the cost
            GenerationError: If the generator fails or times out
        """
        started = time.monotonic()
        key = context.fingerprint or compute_fingerprint(operation_kind, payload)

        cached = self.cache.lookup(key)
        if cached is not None:
            return OperationOutcome(
                from_cache=True,
                result=cached.result,
                credits_used=0,
                elapsed_ms=_elapsed_ms(started),
                fingerprint=key,
                cached_at=cached.created_at,
            )

        cost = cost_fn(context)
        try:
            reservation = self.ledger.admit(cost)
        except InsufficientCreditsError as e:
            logger.error(
                "operation_denied",
                operation_kind=operation_kind,
                feature_id=context.feature_id,
                required=e.required,
                available=e.available,
            )
            raise

        try:
            result = self._generate(generate_fn, context)
        except Exception:
            if reservation is not None:
                self.ledger.release(reservation)
            raise

        metadata = dict(context.metadata)
        if usage_metadata_fn is not None:
            metadata.update(usage_metadata_fn(result))
        metadata.setdefault("fingerprint", key)

        futures = {
            "cache_store": self._executor.submit(
                self.cache.store, key, result, operation_kind, context.variant
            ),
            "usage_record": self._executor.submit(
                self.ledger.settle,
                reservation,
                operation_kind,
                cost,
                context.feature_id,
                context.actor_id,
                metadata,
            ),
        }
        if context.scope and self.scoped_store is not None:
            item_id = str(result.get("id") or key)
            futures["scoped_store"] = self._executor.submit(
                self.scoped_store.put,
                context.scope,
                item_id,
                result,
                datetime.now(timezone.utc),
            )

        for name, future in futures.items():
            try:
                future.result()
            except Exception as e:
                logger.error(
                    "post_generation_write_failed",
                    step=name,
                    operation_kind=operation_kind,
                    fingerprint=key,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if name == "usage_record" and reservation is not None:
                    self.ledger.release(reservation)

        elapsed = _elapsed_ms(started)
        logger.info(
            "operation_complete",
            operation_kind=operation_kind,
            feature_id=context.feature_id,
            credits=cost,
            elapsed_ms=elapsed,
        )
        return OperationOutcome(
            from_cache=False,
            result=result,
            credits_used=cost,
            elapsed_ms=elapsed,
            fingerprint=key,
        )

    def _generate(self, generate_fn: GenerateFn, context: OperationContext) -> Dict[str, Any]:
        try:
            if self.generation_timeout is None:
                return generate_fn(context)
            future = _start_generation(generate_fn, context)
            try:
                return future.result(timeout=self.generation_timeout)
            except FutureTimeoutError:
                if future.done():
                    # the generator itself raised TimeoutError
                    raise
                future.cancel()
                logger.error(
                    "generation_timed_out",
                    feature_id=context.feature_id,
                    timeout_seconds=self.generation_timeout,
                )
                raise GenerationTimeoutError(self.generation_timeout)
        except GenerationError:
            raise
        except Exception as e:
            logger.error(
                "generation_failed",
                feature_id=context.feature_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GenerationError(str(e)) from e


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _start_generation(generate_fn: GenerateFn, context: OperationContext) -> Future:
    """Run a deadline-bound generator on a thread of its own.

    A generator that overruns its deadline cannot be interrupted; it keeps
    its thread until it returns and the result is discarded. Giving each
    call its own thread keeps a hung backend from delaying other requests
    or the post-generation writes on the shared pool.
    """
    future: Future = Future()

    def run():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(generate_fn(context))
        except Exception as e:
            future.set_exception(e)

    threading.Thread(target=run, name="credit-meter-generate", daemon=True).start()
    return future
