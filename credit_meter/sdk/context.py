"""
Explicit wiring of the credit meter components.

Everything a request handler needs is built once at startup and passed
around as a ``MeterContext``; nothing is held in module-level singletons.
"""

from dataclasses import dataclass
from typing import Any, Optional

from credit_meter.config.loader import MeterConfig
from credit_meter.core.cache import ResultCache
from credit_meter.core.ledger import BudgetLedger, UsageSummary
from credit_meter.core.runner import MeteredOperationRunner
from credit_meter.storage.repository import (
    CacheRepository,
    LedgerRepository,
    ScopedResultRepository,
    initialize_schema,
)

from .assets import AssetService, PlaceholderImageGenerator
from .events import EventService


@dataclass
class MeterContext:
    """Ledger, cache, runner and entry-point services sharing one store."""
    config: MeterConfig
    ledger: BudgetLedger
    cache: ResultCache
    scoped_store: ScopedResultRepository
    runner: MeteredOperationRunner
    assets: AssetService
    events: EventService

    def usage_summary(self) -> UsageSummary:
        return self.ledger.usage_summary()

    def close(self) -> None:
        self.runner.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


def build_context(
    config: Optional[MeterConfig] = None,
    image_generator: Any = None,
    classifier: Any = None,
    initialize: bool = True,
) -> MeterContext:
    """Build a MeterContext from configuration.

    Args:
        config: Settings to use; defaults to the reference deployment
        image_generator: Image backend; defaults to the placeholder
        classifier: Event classifier; defaults to the heuristic one
        initialize: Create missing tables before returning
    """
    config = config or MeterConfig.default()
    db_path = config.runtime.db_path
    if initialize:
        initialize_schema(db_path)

    ledger = BudgetLedger(
        LedgerRepository(db_path),
        monthly_limit=config.budget.monthly_limit,
        admission=config.budget.admission,
        reservation_ttl=config.budget.reservation_ttl,
    )
    cache = ResultCache(CacheRepository(db_path), eviction=config.eviction)
    scoped_store = ScopedResultRepository(db_path)
    runner = MeteredOperationRunner(
        ledger,
        cache,
        scoped_store=scoped_store,
        generation_timeout=config.runtime.generation_timeout_seconds,
        max_workers=config.runtime.max_workers,
    )
    generator = image_generator or PlaceholderImageGenerator(config.runtime.asset_bucket)
    return MeterContext(
        config=config,
        ledger=ledger,
        cache=cache,
        scoped_store=scoped_store,
        runner=runner,
        assets=AssetService(runner, generator=generator, schedule=config.schedule),
        events=EventService(runner, classifier=classifier, schedule=config.schedule),
    )
