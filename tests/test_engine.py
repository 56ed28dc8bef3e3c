"""
Tests for the EnrichmentOrchestrator class.
"""
import unittest
import sys
import os
import asyncio
import json

import httpx
import respx

# Add the parent directory to the path so we can import the application modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cache_manager import cache_manager
from exceptions import (ContentUnavailableError, CostLimitReachedError, FailureKind,
                        ParseFailureError, QuotaExceededError, TransientError)
from ledger import ProviderAccount, QuotaCostLedger
from models import (CacheEntry, EnrichmentFailure, EnrichmentRequest, EnrichmentSuccess,
                    EnrichRequest, Metadata, RawHint, RetryPolicy)
from services.base import BUDGET_COST, BUDGET_QUOTA, EnrichmentStrategy
from services.cache import InMemoryEnrichmentCache
from services.engine import EnrichmentOrchestrator
from services.llm import LLMStrategy


class FakeStrategy(EnrichmentStrategy):
    """Succeeds unless an outcome (an exception) is configured for the identifier."""

    def __init__(self, ledger, name, outcomes=None, cost=0.0, max_batch_size=1):
        super().__init__(ledger)
        self.name = name
        self.outcomes = outcomes or {}
        self.cost = cost
        self.max_batch_size = max_batch_size
        self.calls = []
        self.closed = False

    async def fetch(self, identifier, context=None):
        self.calls.append(identifier)
        outcome = self.outcomes.get(identifier)
        if outcome is not None:
            return self.failure_from_exception(identifier, outcome, self.cost)
        return self.success(identifier, Metadata(title=f"{self.name}:{identifier}"), self.cost, 10)

    async def close(self):
        self.closed = True


class PaidStrategy(EnrichmentStrategy):
    """Charges a fixed price per call through the ledger."""

    name = "llm"
    provider = "paid"
    budget_kind = BUDGET_COST

    def __init__(self, ledger, price):
        super().__init__(ledger)
        self.price = price
        self.calls = []

    def estimated_cost(self):
        return self.price

    async def fetch(self, identifier, context=None):
        self.calls.append(identifier)
        spend = context.spend if context else None
        if not await self.ledger.try_reserve(self.provider, self.price, spend):
            return self.failure_from_exception(identifier, CostLimitReachedError())
        await asyncio.sleep(0)
        await self.ledger.commit(self.provider, self.price, self.price, tokens=100, scope=spend)
        return self.success(identifier, Metadata(title=identifier), self.price, 100)


class QuotaStrategy(EnrichmentStrategy):
    """Spends one quota unit per batch call."""

    name = "api"
    provider = "youtube"
    budget_kind = BUDGET_QUOTA
    max_batch_size = 2

    def __init__(self, ledger):
        super().__init__(ledger)
        self.batches = []

    def estimated_cost(self):
        return 1.0

    async def fetch_batch(self, identifiers, context=None):
        self.batches.append(list(identifiers))
        if not await self.ledger.try_reserve_quota(self.provider, 1):
            return [self.failure_from_exception(i, QuotaExceededError()) for i in identifiers]
        return [self.success(i, Metadata(title=i)) for i in identifiers]

    async def fetch(self, identifier, context=None):
        return (await self.fetch_batch([identifier], context))[0]


class ExplodingStrategy(FakeStrategy):

    async def fetch_batch(self, identifiers, context=None):
        raise RuntimeError("boom")


def make_request(identifiers, order, **kwargs):
    return EnrichmentRequest(identifiers=identifiers, strategy_order=order, **kwargs)


class TestEnrichmentOrchestrator(unittest.IsolatedAsyncioTestCase):
    """Test cases for the EnrichmentOrchestrator class."""

    async def asyncSetUp(self):
        self.ledger = QuotaCostLedger({
            "youtube": ProviderAccount(quota_limit=1),
            "paid": ProviderAccount(cost_ceiling=1.0),
        })
        self.cache = InMemoryEnrichmentCache()

    def _orchestrator(self, *strategies, **kwargs):
        return EnrichmentOrchestrator({s.name: s for s in strategies}, self.ledger, cache=self.cache, **kwargs)

    async def test_one_result_per_distinct_identifier(self):
        api = FakeStrategy(self.ledger, "api")
        orchestrator = self._orchestrator(api)

        outcome = await orchestrator.enrich(make_request(["b", "a", "b", "", "c", "a"], ["api"]))

        self.assertEqual(list(outcome.results), ["b", "a", "c"])
        self.assertEqual(outcome.summary.total, 3)
        self.assertEqual(outcome.summary.succeeded, 3)
        self.assertEqual(sorted(api.calls), ["a", "b", "c"])

    async def test_cache_hit_skips_strategies(self):
        entry = CacheEntry.create("a", Metadata(title="cached"), "api", 3600)
        await self.cache.put("a", entry)
        api = FakeStrategy(self.ledger, "api")
        orchestrator = self._orchestrator(api)

        outcome = await orchestrator.enrich(make_request(["a", "b"], ["api"]))

        cached = outcome.results["a"]
        self.assertTrue(cached.from_cache)
        self.assertEqual(cached.metadata.title, "cached")
        self.assertEqual(cached.cost, 0.0)
        self.assertEqual(cached.cached_at, entry.computed_at)
        self.assertEqual(api.calls, ["b"])
        self.assertEqual(outcome.summary.from_cache, 1)

    async def test_success_is_cached_for_next_request(self):
        api = FakeStrategy(self.ledger, "api")
        orchestrator = self._orchestrator(api)

        first = await orchestrator.enrich(make_request(["a"], ["api"]))
        second = await orchestrator.enrich(make_request(["a"], ["api"]))

        self.assertIsNotNone(first.results["a"].cached_at)
        self.assertFalse(first.results["a"].from_cache)
        self.assertTrue(second.results["a"].from_cache)
        self.assertEqual(api.calls, ["a"])

    async def test_zero_ttl_does_not_cache(self):
        api = FakeStrategy(self.ledger, "api")
        orchestrator = self._orchestrator(api)

        await orchestrator.enrich(make_request(["a"], ["api"], cache_ttl=0))
        await orchestrator.enrich(make_request(["a"], ["api"], cache_ttl=0))

        self.assertEqual(api.calls, ["a", "a"])

    async def test_fallback_chain_in_order(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"a": TransientError("503")})
        scraping = FakeStrategy(self.ledger, "scraping", outcomes={"a": ParseFailureError("no title")})
        llm = FakeStrategy(self.ledger, "llm", cost=0.01)
        orchestrator = self._orchestrator(api, scraping, llm)

        outcome = await orchestrator.enrich(make_request(["a", "b"], ["api", "scraping", "llm"]))

        result = outcome.results["a"]
        self.assertIsInstance(result, EnrichmentSuccess)
        self.assertEqual(result.strategy_used, "llm")
        self.assertEqual([a.strategy for a in result.attempts], ["api", "scraping", "llm"])
        self.assertEqual([a.kind for a in result.attempts],
                         [FailureKind.TRANSIENT, FailureKind.PARSE_FAILURE, None])
        self.assertAlmostEqual(result.cost, 0.01)
        self.assertEqual(outcome.results["b"].strategy_used, "api")
        self.assertEqual(scraping.calls, ["a"])
        self.assertEqual(llm.calls, ["a"])

    async def test_final_failure_reports_last_stage(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"a": TransientError("503")})
        scraping = FakeStrategy(self.ledger, "scraping", outcomes={"a": ParseFailureError("no title")})
        orchestrator = self._orchestrator(api, scraping)

        outcome = await orchestrator.enrich(make_request(["a"], ["api", "scraping"]))

        result = outcome.results["a"]
        self.assertIsInstance(result, EnrichmentFailure)
        self.assertEqual(result.kind, FailureKind.PARSE_FAILURE)
        self.assertEqual(result.strategy_attempted, "scraping")
        self.assertEqual(len(result.attempts), 2)
        self.assertEqual(outcome.summary.failures_by_kind, {"ParseFailure": 1})

    async def test_content_unavailable_is_terminal(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"a": ContentUnavailableError("deleted")})
        scraping = FakeStrategy(self.ledger, "scraping")
        orchestrator = self._orchestrator(api, scraping)

        outcome = await orchestrator.enrich(make_request(["a"], ["api", "scraping"]))

        self.assertEqual(outcome.results["a"].kind, FailureKind.CONTENT_UNAVAILABLE)
        self.assertEqual(scraping.calls, [])

    async def test_content_unavailable_fallback_when_enabled(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"a": ContentUnavailableError("deleted")})
        scraping = FakeStrategy(self.ledger, "scraping")
        orchestrator = self._orchestrator(api, scraping, fallback_on_unavailable=True)

        outcome = await orchestrator.enrich(make_request(["a"], ["api", "scraping"]))

        self.assertEqual(outcome.results["a"].strategy_used, "scraping")

    async def test_fallback_disabled_uses_first_strategy_only(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"a": TransientError("503")})
        scraping = FakeStrategy(self.ledger, "scraping")
        orchestrator = self._orchestrator(api, scraping)

        outcome = await orchestrator.enrich(make_request(["a"], ["api", "scraping"], enable_fallback=False))

        self.assertEqual(outcome.results["a"].kind, FailureKind.TRANSIENT)
        self.assertEqual(scraping.calls, [])
        self.assertEqual(list(outcome.summary.per_strategy), ["api"])

    async def test_unconfigured_strategy_fails_transient(self):
        orchestrator = self._orchestrator(FakeStrategy(self.ledger, "scraping"))

        outcome = await orchestrator.enrich(make_request(["a"], ["llm"]))

        result = outcome.results["a"]
        self.assertEqual(result.kind, FailureKind.TRANSIENT)
        self.assertIn("not available", result.message)

    async def test_cost_ceiling_stops_paid_calls(self):
        paid = PaidStrategy(self.ledger, price=0.04)
        orchestrator = self._orchestrator(paid)
        identifiers = [f"vid{n:08d}" for n in range(5)]

        outcome = await orchestrator.enrich(make_request(identifiers, ["llm"], cost_ceiling=0.10, cache_ttl=0))

        succeeded = [r for r in outcome.results.values() if isinstance(r, EnrichmentSuccess)]
        failed = [r for r in outcome.results.values() if isinstance(r, EnrichmentFailure)]
        self.assertEqual(len(succeeded), 2)
        self.assertEqual(len(failed), 3)
        self.assertTrue(all(r.kind == FailureKind.COST_LIMIT_REACHED for r in failed))
        self.assertEqual(outcome.summary.budget_exhausted, 3)
        self.assertEqual(outcome.summary.halted_strategies, ["llm"])
        self.assertAlmostEqual(outcome.summary.total_cost, 0.08)

        account = (await self.ledger.snapshot())["paid"]
        self.assertAlmostEqual(account["cost_spent"], 0.08)
        self.assertEqual(account["cost_ceiling"], 1.0)

    async def test_request_ceiling_does_not_outlive_the_request(self):
        self.ledger = QuotaCostLedger({"paid": ProviderAccount(cost_ceiling=0.05)})
        orchestrator = self._orchestrator(PaidStrategy(self.ledger, price=0.04))

        first = await orchestrator.enrich(make_request(["a", "b"], ["llm"], cost_ceiling=1000.0, cache_ttl=0))
        second = await orchestrator.enrich(make_request(["c"], ["llm"], cache_ttl=0))

        self.assertEqual(first.summary.succeeded, 1)
        self.assertEqual(first.results["b"].kind, FailureKind.COST_LIMIT_REACHED)
        self.assertEqual(second.results["c"].kind, FailureKind.COST_LIMIT_REACHED)
        account = (await self.ledger.snapshot())["paid"]
        self.assertEqual(account["cost_ceiling"], 0.05)
        self.assertAlmostEqual(account["cost_spent"], 0.04)

    async def test_request_retry_policy_reaches_strategy(self):
        seen = []

        class PolicyRecorder(FakeStrategy):
            async def fetch(self, identifier, context=None):
                seen.append(self.retry_policy_for(context).retry_attempts)
                return await super().fetch(identifier, context)

        recorder = PolicyRecorder(self.ledger, "api")
        recorder.retry_policy = RetryPolicy(retry_attempts=3)
        orchestrator = self._orchestrator(recorder)

        await orchestrator.enrich(make_request(["a"], ["api"], retry_policy=RetryPolicy(retry_attempts=0), cache_ttl=0))
        await orchestrator.enrich(make_request(["b"], ["api"], cache_ttl=0))

        self.assertEqual(seen, [0, 3])

    async def test_quota_halt_skips_remaining_groups(self):
        api = QuotaStrategy(self.ledger)
        scraping = FakeStrategy(self.ledger, "scraping")
        orchestrator = self._orchestrator(api, scraping)

        outcome = await orchestrator.enrich(
            make_request(["a", "b", "c", "d"], ["api", "scraping"], concurrency_limit=1)
        )

        self.assertEqual(api.batches, [["a", "b"]])
        stats = outcome.summary.per_strategy["api"]
        self.assertEqual(stats.succeeded, 2)
        self.assertEqual(stats.skipped, 2)
        self.assertEqual(outcome.summary.halted_strategies, ["api"])
        self.assertEqual(outcome.results["c"].strategy_used, "scraping")
        self.assertEqual(outcome.results["c"].attempts[0].kind, FailureKind.QUOTA_EXCEEDED)
        self.assertEqual(outcome.summary.budget_exhausted, 0)

    async def test_batches_run_sequentially(self):
        api = FakeStrategy(self.ledger, "api")
        orchestrator = self._orchestrator(api)

        outcome = await orchestrator.enrich(make_request(["a", "b", "c"], ["api"], batch_size=1))

        self.assertEqual(api.calls, ["a", "b", "c"])
        self.assertEqual(outcome.summary.succeeded, 3)

    async def test_raising_strategy_becomes_failures(self):
        orchestrator = self._orchestrator(ExplodingStrategy(self.ledger, "api"))

        outcome = await orchestrator.enrich(make_request(["a", "b"], ["api"]))

        self.assertEqual([r.kind for r in outcome.results.values()], [FailureKind.TRANSIENT] * 2)
        self.assertIn("boom", outcome.results["a"].message)

    async def test_records_fall_back_to_hints(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"b": TransientError("503")})
        orchestrator = self._orchestrator(api)
        request = make_request(["a", "b"], ["api"], hints={"b": RawHint(title="Raw title", channel_name="Raw")})

        records = (await orchestrator.enrich(request)).records()

        self.assertTrue(records[0].enriched)
        self.assertEqual(records[0].metadata.title, "api:a")
        self.assertFalse(records[1].enriched)
        self.assertEqual(records[1].metadata.title, "Raw title")
        self.assertIsNone(records[1].strategy_used)

    async def test_enrich_one(self):
        orchestrator = self._orchestrator(FakeStrategy(self.ledger, "scraping"))

        result = await orchestrator.enrich_one("a", strategy_order=["scraping"], cache_ttl=None)

        self.assertEqual(result.identifier, "a")
        self.assertEqual(result.strategy_used, "scraping")

    async def test_global_stats(self):
        api = FakeStrategy(self.ledger, "api", outcomes={"b": TransientError("503")})
        orchestrator = self._orchestrator(api)
        await orchestrator.enrich(make_request(["a", "b"], ["api"]))

        stats = await orchestrator.get_global_stats()

        self.assertEqual(stats["total_requests_processed"], 1)
        self.assertEqual(stats["total_identifiers_processed"], 2)
        self.assertEqual(stats["succeeded"], 1)
        self.assertEqual(stats["failures_by_kind"], {"Transient": 1})
        self.assertEqual(stats["success_rate"], 0.5)
        self.assertIn("api", stats["strategies"])
        self.assertIn("paid", stats["ledger"])

    async def test_clear_caches(self):
        orchestrator = self._orchestrator(FakeStrategy(self.ledger, "api"))
        await orchestrator.register_caches()
        self.addAsyncCleanup(cache_manager.unregister_cache, "enrichment_results")
        await orchestrator.enrich(make_request(["a", "b"], ["api"]))

        results = await orchestrator.clear_caches()

        self.assertEqual(results["enrichment_results"], 2)
        self.assertIsNone(await self.cache.get("a"))

    async def test_reset_ledger(self):
        orchestrator = self._orchestrator(PaidStrategy(self.ledger, price=0.04))
        await orchestrator.enrich(make_request(["a"], ["llm"]))

        snapshot = await orchestrator.reset_ledger("paid")

        self.assertEqual(snapshot["paid"]["cost_spent"], 0.0)
        self.assertEqual(snapshot["paid"]["cost_ceiling"], 1.0)

    async def test_shutdown_closes_strategies(self):
        api = FakeStrategy(self.ledger, "api")
        scraping = FakeStrategy(self.ledger, "scraping")
        orchestrator = self._orchestrator(api, scraping)

        await orchestrator.shutdown()

        self.assertTrue(api.closed)
        self.assertTrue(scraping.closed)


BASE_URL = "https://llm.test/api/v1"
WATCH_PAGE = "<html><head><title>Some Video - YouTube</title></head><body></body></html>"


def completion(title):
    # claude-3-haiku, 1000 prompt + 200 completion tokens: $0.0005
    return httpx.Response(200, json={
        "choices": [{"message": {"role": "assistant", "content": json.dumps({"title": title})}}],
        "usage": {"prompt_tokens": 1000, "completion_tokens": 200, "total_tokens": 1200},
    })


class CountingFetcher:
    def __init__(self):
        self.fetched = []

    async def fetch(self, video_id):
        self.fetched.append(video_id)
        await asyncio.sleep(0)
        return WATCH_PAGE

    async def close(self):
        pass


class TestOrchestratorWithLLMStrategy(unittest.IsolatedAsyncioTestCase):
    """Budget and retry behaviour through the real LLM strategy."""

    async def asyncSetUp(self):
        self.ledger = QuotaCostLedger({"openrouter": ProviderAccount(cost_ceiling=1.0)})
        self.fetcher = CountingFetcher()

    def _orchestrator(self):
        async def no_sleep(delay):
            pass

        # Every estimate and every call comes to $0.0005 with these settings
        llm = LLMStrategy(
            self.ledger,
            fetcher=self.fetcher,
            api_key="test-key",
            model="claude-3-haiku",
            provider="openrouter",
            base_url=BASE_URL,
            max_tokens=200,
            max_content_chars=2000,
            retry_policy=RetryPolicy(retry_attempts=3, base_delay_ms=1, max_delay_ms=1),
            sleep=no_sleep,
            token_counter=lambda text: 500,
        )
        return EnrichmentOrchestrator({"llm": llm}, self.ledger, cache=InMemoryEnrichmentCache())

    async def test_request_ceiling_stops_page_fetches(self):
        identifiers = [f"vid{n:08d}" for n in range(5)]
        with respx.mock() as router:
            route = router.post(f"{BASE_URL}/chat/completions").mock(return_value=completion("Some Video"))
            orchestrator = self._orchestrator()
            outcome = await orchestrator.enrich(make_request(
                identifiers, ["llm"], cost_ceiling=0.0012, concurrency_limit=5, cache_ttl=0
            ))
            await orchestrator.shutdown()

        self.assertEqual(outcome.summary.succeeded, 2)
        self.assertEqual(len(self.fetcher.fetched), 2)
        self.assertEqual(route.call_count, 2)
        failed = [r for r in outcome.results.values() if isinstance(r, EnrichmentFailure)]
        self.assertTrue(all(r.kind == FailureKind.COST_LIMIT_REACHED for r in failed))
        account = (await self.ledger.snapshot())["openrouter"]
        self.assertAlmostEqual(account["cost_spent"], 0.001)
        self.assertEqual(account["cost_reserved"], 0.0)
        self.assertEqual(account["cost_ceiling"], 1.0)

    async def test_request_retry_attempts_limit_llm_calls(self):
        with respx.mock() as router:
            route = router.post(f"{BASE_URL}/chat/completions").mock(return_value=httpx.Response(503))
            orchestrator = self._orchestrator()
            request = EnrichRequest(identifiers=["dQw4w9WgXcQ"], strategy_order=["llm"],
                                    retry_attempts=0, cache_ttl=0).to_enrichment_request()
            outcome = await orchestrator.enrich(request)
            self.assertEqual(route.call_count, 1)

            await orchestrator.enrich(make_request(["jNQXAC9IVRw"], ["llm"], cache_ttl=0))
            self.assertEqual(route.call_count, 1 + 4)
            await orchestrator.shutdown()

        self.assertEqual(outcome.results["dQw4w9WgXcQ"].kind, FailureKind.TRANSIENT)


if __name__ == '__main__':
    unittest.main()
