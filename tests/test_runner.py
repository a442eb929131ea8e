"""
Tests for the metered operation runner.

Covers cache short-circuiting, budget gating, failure handling around the
generator and the concurrent-admission behaviour of both admission modes.
"""

import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch

import pytest

from credit_meter.core.cache import ResultCache
from credit_meter.core.errors import (
    GenerationError,
    GenerationTimeoutError,
    InsufficientCreditsError,
    LedgerWriteError,
)
from credit_meter.core.fingerprint import fingerprint
from credit_meter.core.ledger import AdmissionMode, BudgetLedger
from credit_meter.core.runner import MeteredOperationRunner, OperationContext
from credit_meter.storage.repository import (
    CacheRepository,
    LedgerRepository,
    ScopedResultRepository,
    initialize_schema,
)


def flat_cost(credits):
    return lambda context: credits


def echo_generator(calls=None):
    def generate(context):
        if calls is not None:
            calls.append(context.feature_id)
        return {"id": f"item_{context.params.get('n', 0)}", "text": context.params.get("text", "")}
    return generate


class RunnerTestCase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.runners = []

    def teardown_method(self):
        for runner in self.runners:
            runner.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_runner(self, limit=25000, admission=AdmissionMode.STRICT, cache=None, **kwargs):
        self.ledger = BudgetLedger(
            LedgerRepository(self.db_path), monthly_limit=limit, admission=admission
        )
        self.cache = cache or ResultCache(CacheRepository(self.db_path))
        self.scoped = ScopedResultRepository(self.db_path)
        runner = MeteredOperationRunner(self.ledger, self.cache, scoped_store=self.scoped, **kwargs)
        self.runners.append(runner)
        return runner

    def aggregate(self):
        return self.ledger.repository.get_aggregate(self.ledger.current_month_key())


class TestCacheShortCircuit(RunnerTestCase):

    def test_miss_then_hit(self):
        runner = self.make_runner()
        calls = []
        context = OperationContext(feature_id="badge_generation", params={"n": 1})

        first = runner.execute("image", {"prompt": "owl"}, flat_cost(10), echo_generator(calls), context)
        second = runner.execute("image", {"prompt": "owl"}, flat_cost(10), echo_generator(calls), context)

        assert first.from_cache is False
        assert first.credits_used == 10
        assert second.from_cache is True
        assert second.credits_used == 0
        assert second.result == first.result
        assert second.fingerprint == first.fingerprint
        assert second.cached_at is not None
        assert calls == ["badge_generation"]

    def test_hit_records_no_usage(self):
        runner = self.make_runner()
        context = OperationContext(feature_id="badge_generation")
        runner.execute("image", "owl", flat_cost(10), echo_generator(), context)
        runner.execute("image", "owl", flat_cost(10), echo_generator(), context)

        assert len(self.ledger.recent_usage()) == 1
        assert self.ledger.current_month_usage() == 10

    def test_hit_served_even_when_budget_exhausted(self):
        runner = self.make_runner(limit=10)
        context = OperationContext(feature_id="badge_generation")
        runner.execute("image", "owl", flat_cost(10), echo_generator(), context)

        outcome = runner.execute("image", "owl", flat_cost(10), echo_generator(), context)
        assert outcome.from_cache is True

    def test_explicit_fingerprint_is_used(self):
        runner = self.make_runner()
        context = OperationContext(feature_id="f", fingerprint="custom-key")
        outcome = runner.execute("image", "owl", flat_cost(1), echo_generator(), context)

        assert outcome.fingerprint == "custom-key"
        assert self.cache.lookup("custom-key") is not None

    def test_computed_fingerprint(self):
        runner = self.make_runner()
        outcome = runner.execute(
            "image", {"prompt": "owl"}, flat_cost(1), echo_generator(), OperationContext(feature_id="f")
        )
        assert outcome.fingerprint == fingerprint("image", {"prompt": "owl"})


class TestBudgetGate(RunnerTestCase):

    def test_denied_before_generation(self):
        runner = self.make_runner(limit=25000)
        self.ledger.record_usage("image", 24995, "seed")
        generate = Mock(return_value={"id": "x"})

        with pytest.raises(InsufficientCreditsError) as excinfo:
            runner.execute("image", "owl", flat_cost(25), generate, OperationContext(feature_id="f"))

        assert excinfo.value.required == 25
        assert excinfo.value.available == 5
        generate.assert_not_called()
        assert self.ledger.current_month_usage() == 24995

    def test_usage_record_fields(self):
        runner = self.make_runner()
        context = OperationContext(
            feature_id="orb_generation",
            actor_id="user-1",
            variant="large",
            metadata={"size": "large"},
        )
        runner.execute(
            "image", "orb", flat_cost(25), echo_generator(), context,
            usage_metadata_fn=lambda result: {"asset_id": result["id"]},
        )

        record = self.ledger.recent_usage()[0]
        assert record.operation_kind == "image"
        assert record.credits_consumed == 25
        assert record.feature_id == "orb_generation"
        assert record.actor_id == "user-1"
        assert record.metadata["size"] == "large"
        assert record.metadata["asset_id"] == "item_0"
        assert "fingerprint" in record.metadata
        assert self.aggregate().reserved == 0


class TestGenerationFailures(RunnerTestCase):

    def test_failure_bills_nothing(self):
        runner = self.make_runner()

        def broken(context):
            raise RuntimeError("upstream 500")

        with pytest.raises(GenerationError) as excinfo:
            runner.execute("image", "owl", flat_cost(10), broken, OperationContext(feature_id="f"))

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert self.ledger.current_month_usage() == 0
        assert self.aggregate().reserved == 0
        assert self.ledger.recent_usage() == []
        assert self.cache.stats().entries == 0

    def test_failure_in_optimistic_mode(self):
        runner = self.make_runner(admission=AdmissionMode.OPTIMISTIC)

        def broken(context):
            raise ValueError("bad prompt")

        with pytest.raises(GenerationError):
            runner.execute("image", "owl", flat_cost(10), broken, OperationContext(feature_id="f"))
        assert self.ledger.current_month_usage() == 0

    def test_timeout(self):
        runner = self.make_runner(generation_timeout=0.05)
        release = threading.Event()

        def slow(context):
            release.wait(5)
            return {"id": "late"}

        try:
            with pytest.raises(GenerationTimeoutError) as excinfo:
                runner.execute("image", "owl", flat_cost(10), slow, OperationContext(feature_id="f"))
        finally:
            release.set()

        assert excinfo.value.timeout_seconds == 0.05
        assert self.ledger.current_month_usage() == 0
        assert self.aggregate().reserved == 0

    def test_fast_generator_within_timeout(self):
        runner = self.make_runner(generation_timeout=5)
        outcome = runner.execute(
            "image", "owl", flat_cost(10), echo_generator(), OperationContext(feature_id="f")
        )
        assert outcome.credits_used == 10

    def test_hung_generator_does_not_delay_next_request(self):
        runner = self.make_runner(max_workers=1, generation_timeout=0.2)
        release = threading.Event()

        def hung(context):
            release.wait(30)
            return {"id": "late"}

        try:
            with pytest.raises(GenerationTimeoutError):
                runner.execute("image", "owl", flat_cost(10), hung, OperationContext(feature_id="f"))

            outcome = runner.execute(
                "image", "lark", flat_cost(10), echo_generator(), OperationContext(feature_id="f")
            )
        finally:
            release.set()

        assert outcome.from_cache is False
        assert outcome.credits_used == 10
        assert self.ledger.current_month_usage() == 10
        assert self.aggregate().reserved == 0

    def test_generator_timeout_error_is_not_a_deadline(self):
        runner = self.make_runner(generation_timeout=5)

        def failing(context):
            raise TimeoutError("upstream timed out")

        with pytest.raises(GenerationError, match="upstream timed out") as excinfo:
            runner.execute("image", "owl", flat_cost(10), failing, OperationContext(feature_id="f"))

        assert not isinstance(excinfo.value, GenerationTimeoutError)
        assert self.ledger.current_month_usage() == 0

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            self.make_runner(generation_timeout=0)


class TestPostGenerationWrites(RunnerTestCase):

    def test_cache_write_failure_still_returns_and_bills(self):
        cache = Mock()
        cache.lookup.return_value = None
        cache.store.side_effect = RuntimeError("disk full")
        runner = self.make_runner(cache=cache)

        outcome = runner.execute(
            "image", "owl", flat_cost(10), echo_generator(), OperationContext(feature_id="f")
        )

        assert outcome.result == {"id": "item_0", "text": ""}
        assert self.ledger.current_month_usage() == 10

    def test_usage_write_failure_still_returns(self):
        runner = self.make_runner()

        with patch.object(self.ledger, "settle", side_effect=LedgerWriteError("locked")):
            outcome = runner.execute(
                "image", "owl", flat_cost(10), echo_generator(), OperationContext(feature_id="f")
            )

        assert outcome.from_cache is False
        assert outcome.credits_used == 10
        assert self.aggregate().reserved == 0
        assert self.cache.lookup(outcome.fingerprint) is not None

    def test_scoped_copy_stored(self):
        runner = self.make_runner()
        context = OperationContext(
            feature_id="distillation_standard", scope="actors/u1/life_events", params={"n": 7}
        )
        runner.execute("distillation", "note", flat_cost(4), echo_generator(), context)

        stored = self.scoped.list("actors/u1/life_events")
        assert len(stored) == 1
        assert stored[0].item_id == "item_7"

    def test_no_scope_no_copy(self):
        runner = self.make_runner()
        runner.execute("distillation", "note", flat_cost(4), echo_generator(), OperationContext(feature_id="f"))
        assert self.scoped.list("actors/u1/life_events") == []


class TestConcurrentAdmission(RunnerTestCase):
    """Two requests for different fingerprints racing for the last credits."""

    def _race(self, admission):
        runner = self.make_runner(limit=100, admission=admission)
        self.ledger.record_usage("image", 85, "seed")
        outcomes = {}

        def request_b(context):
            try:
                outcomes["b"] = runner.execute(
                    "image", "request-b", flat_cost(10), echo_generator(), OperationContext(feature_id="b")
                )
            except InsufficientCreditsError as e:
                outcomes["b"] = e
            return {"id": "a"}

        # B is admitted and completes while A's generator is still in flight
        outcomes["a"] = runner.execute(
            "image", "request-a", flat_cost(10), request_b, OperationContext(feature_id="a")
        )
        return outcomes

    def test_strict_mode_never_overspends(self):
        outcomes = self._race(AdmissionMode.STRICT)

        assert outcomes["a"].credits_used == 10
        assert isinstance(outcomes["b"], InsufficientCreditsError)
        assert outcomes["b"].available == 5
        assert self.ledger.current_month_usage() == 95

    def test_optimistic_mode_may_overspend(self):
        outcomes = self._race(AdmissionMode.OPTIMISTIC)

        assert outcomes["a"].credits_used == 10
        assert outcomes["b"].credits_used == 10
        assert self.ledger.current_month_usage() == 105

    def test_strict_mode_under_thread_contention(self):
        runner = self.make_runner(limit=100)

        def attempt(n):
            try:
                runner.execute(
                    "image", f"request-{n}", flat_cost(10), echo_generator(),
                    OperationContext(feature_id="f", params={"n": n}),
                )
                return True
            except InsufficientCreditsError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(20)))

        assert results.count(True) == 10
        assert self.ledger.current_month_usage() == 100
        assert self.aggregate().reserved == 0
